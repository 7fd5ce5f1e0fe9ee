"""
chatroom.schemas
~~~~~~~~~~~~~~~~
Pydantic schemas for the HTTP API and the WebSocket event protocol.
"""
from chatroom.schemas.api_response import ApiResponse
from chatroom.schemas.events import (
    ChatTextPayload,
    ConnectPayload,
    CreateRoomPayload,
    DisconnectPayload,
    EventEnvelope,
    JoinRoomPayload,
    LeaveRoomPayload,
    SearchRoomPayload,
)
from chatroom.schemas.rooms import (
    BanStatusData,
    Member,
    MemberData,
    RoomCounts,
    RoomData,
    StatsData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
