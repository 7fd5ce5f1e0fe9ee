"""
chatroom.services.identity
~~~~~~~~~~~~~~~~~~~~~~~~~~

身份登记表 —— 记录当前在线的用户标识及临时封禁。

用户标识由客户端提供并跨重连保持（身份，而非安全凭证）；
连接 ID 由传输层分配，每次重连都会变化。

封禁记录采用惰性过期：查询时发现已过期即删除，无需后台清扫。
所有状态仅在进程生命周期内有效，重启即清空。
"""
from __future__ import annotations

import time
from collections.abc import Callable

from chatroom.core.logging import get_logger

logger = get_logger(__name__)


class UserSession:
    """一个在线会话。

    Attributes:
        user_id: 用户标识。
        connection_id: 当前持有该身份的连接 ID。
        active_since: 上线时间（秒级时间戳）。
    """

    def __init__(self, user_id: str, connection_id: str, active_since: float) -> None:
        self.user_id = user_id
        self.connection_id = connection_id
        self.active_since = active_since

    def __repr__(self) -> str:
        return f"UserSession(user_id={self.user_id!r}, connection_id={self.connection_id!r})"


class IdentityRegistry:
    """在线会话与封禁记录的唯一持有者。

    Attributes:
        clock: 返回当前秒级时间戳的函数，测试时可替换。
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._sessions: dict[str, UserSession] = {}
        self._bans: dict[str, float] = {}

    # ── 在线会话 ──────────────────────────────────────────────────────

    def mark_connected(self, user_id: str, connection_id: str) -> UserSession:
        """登记在线会话（同一连接重复登记是幂等的）。"""
        session = self._sessions.get(user_id)
        if session is not None and session.connection_id == connection_id:
            return session
        session = UserSession(user_id, connection_id, self.clock())
        self._sessions[user_id] = session
        return session

    def mark_disconnected(self, user_id: str, connection_id: str | None = None) -> bool:
        """移除在线会话。

        Args:
            user_id: 用户标识。
            connection_id: 若提供，只移除由该连接持有的会话，
                旧连接迟到的断开不会把新连接的会话踢掉。

        Returns:
            是否真的移除了会话。
        """
        session = self._sessions.get(user_id)
        if session is None:
            return False
        if connection_id is not None and session.connection_id != connection_id:
            return False
        del self._sessions[user_id]
        return True

    def session(self, user_id: str) -> UserSession | None:
        return self._sessions.get(user_id)

    def is_active(self, user_id: str) -> bool:
        return user_id in self._sessions

    def user_for_connection(self, connection_id: str) -> str | None:
        """反查某个连接登记的用户标识。"""
        for session in self._sessions.values():
            if session.connection_id == connection_id:
                return session.user_id
        return None

    @property
    def active_count(self) -> int:
        """当前在线的用户标识数。"""
        return len(self._sessions)

    # ── 封禁 ──────────────────────────────────────────────────────────

    def ban(self, user_id: str, duration_seconds: float) -> float:
        """封禁用户（覆盖已有记录）。

        Returns:
            封禁到期时间（秒级时间戳）。
        """
        expires_at = self.clock() + duration_seconds
        self._bans[user_id] = expires_at
        logger.info("用户已封禁 | user=%s | 时长=%.0fs", user_id, duration_seconds)
        return expires_at

    def is_banned(self, user_id: str) -> bool:
        """检查用户当前是否处于封禁期，顺带清理已过期的记录。"""
        return self.ban_expiry(user_id) is not None

    def ban_expiry(self, user_id: str) -> float | None:
        """返回封禁到期时间；未封禁或已过期时返回 ``None``。"""
        expires_at = self._bans.get(user_id)
        if expires_at is None:
            return None
        if expires_at <= self.clock():
            del self._bans[user_id]
            logger.debug("封禁已过期 | user=%s", user_id)
            return None
        return expires_at
