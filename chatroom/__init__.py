"""
chatroom
~~~~~~~~

多房间实时聊天协调服务。
"""
