"""
chatroom.services.room_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间存储 —— 房间 ID 到房间状态的权威映射。

``members`` 的顺序即展示序号（"1."、"2." ...），移除成员时保持其余成员的相对顺序。
容量约束在这里强制执行：满员时加入会被拒绝，而不是被静默丢弃。

人数统计每次按需重算，不维护增量计数器，避免计数漂移。
"""
from __future__ import annotations

import html
import secrets
import string

from chatroom.core.errors import RoomFull, RoomNotFound, ValidationError
from chatroom.core.logging import get_logger
from chatroom.schemas.rooms import VISIBILITIES, Member, MemberData, RoomCounts, RoomData

logger = get_logger(__name__)

_ROOM_ID_ALPHABET: str = string.ascii_lowercase + string.digits
_ROOM_ID_LENGTH: int = 9


def generate_room_id(length: int = _ROOM_ID_LENGTH) -> str:
    """生成随机房间 ID，形如 ``_k3j9x0a2b``。"""
    return "_" + "".join(secrets.choice(_ROOM_ID_ALPHABET) for _ in range(length))


class Room:
    """一个聊天房间。

    Attributes:
        id: 房间唯一标识。
        name: 房间名（已清洗）。
        visibility: ``public`` 可被发现，``private`` 只能凭 ID 加入。
        capacity: 最大成员数。
        members: 按加入顺序排列的成员。
    """

    def __init__(self, room_id: str, name: str, visibility: str, capacity: int) -> None:
        self.id = room_id
        self.name = name
        self.visibility = visibility
        self.capacity = capacity
        self.members: list[Member] = []

    @property
    def is_public(self) -> bool:
        return self.visibility == "public"

    @property
    def is_full(self) -> bool:
        return len(self.members) >= self.capacity

    @property
    def is_empty(self) -> bool:
        return not self.members

    def info(self) -> RoomData:
        """返回房间快照（展示序号按当前顺序重新计算）。"""
        return RoomData(
            id=self.id,
            name=self.name,
            visibility=self.visibility,
            capacity=self.capacity,
            member_count=len(self.members),
            members=[
                MemberData(
                    position=index,
                    user_id=m.user_id,
                    display_name=m.display_name,
                    location_label=m.location_label,
                )
                for index, m in enumerate(self.members, start=1)
            ],
        )

    def __repr__(self) -> str:
        return f"Room(id={self.id!r}, name={self.name!r}, members={len(self.members)}/{self.capacity})"


class RoomStore:
    """房间的唯一持有者，只应由 ``MembershipCoordinator`` 修改。

    Attributes:
        capacity: 新建房间的容量。
        max_field_length: 名称类字段的最大长度。
    """

    def __init__(self, capacity: int = 5, max_field_length: int = 20) -> None:
        self.capacity = capacity
        self.max_field_length = max_field_length
        self._rooms: dict[str, Room] = {}

    def _check_field(self, label: str, value: str) -> None:
        # 存储的是转义后的文本，长度按用户看到的字符数计算
        if not value:
            raise ValidationError(f"{label}不能为空")
        if len(html.unescape(value)) > self.max_field_length:
            raise ValidationError(f"{label}不能超过 {self.max_field_length} 个字符")

    def _check_member(self, member: Member) -> None:
        self._check_field("昵称", member.display_name)
        self._check_field("所在地", member.location_label)
        if not member.user_id:
            raise ValidationError("用户标识不能为空")

    def _new_room_id(self) -> str:
        room_id = generate_room_id()
        while room_id in self._rooms:
            room_id = generate_room_id()
        return room_id

    def create(self, name: str, visibility: str, first_member: Member) -> Room:
        """创建房间，``first_member`` 成为第一位成员。

        调用方应在此之前完成校验，这里会再校验一次。

        Raises:
            ValidationError: 房间名 / 成员字段为空或超长，或可见性非法。
        """
        self._check_field("房间名", name)
        self._check_member(first_member)
        if visibility not in VISIBILITIES:
            raise ValidationError(f"无效的房间类型: {visibility}")

        room = Room(self._new_room_id(), name, visibility, self.capacity)
        room.members.append(first_member)
        self._rooms[room.id] = room
        logger.info("房间已创建 | room=%s | name=%s | type=%s", room.id, name, visibility)
        return room

    def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def add_member(self, room_id: str, member: Member) -> Room:
        """向房间追加成员。

        Raises:
            ValidationError: 成员字段为空或超长。
            RoomNotFound: 房间不存在。
            RoomFull: 房间已满员，成员列表保持不变。
        """
        self._check_member(member)
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        if room.is_full:
            raise RoomFull(room_id, room.capacity)
        room.members.append(member)
        return room

    def remove_member(
        self,
        room_id: str,
        *,
        user_id: str | None = None,
        connection_id: str | None = None,
    ) -> tuple[Room, Member] | None:
        """按用户标识或连接 ID 移除第一个匹配的成员。

        按连接 ID 移除用于连接异常断开的场景（此时 user_id 可能已过时）。

        Returns:
            ``(房间, 被移除的成员)``；房间或成员不存在时返回 ``None``。
        """
        if (user_id is None) == (connection_id is None):
            raise ValueError("user_id 与 connection_id 必须且只能提供一个")

        room = self._rooms.get(room_id)
        if room is None:
            return None
        for index, member in enumerate(room.members):
            if (user_id is not None and member.user_id == user_id) or (
                connection_id is not None and member.connection_id == connection_id
            ):
                return room, room.members.pop(index)
        return None

    def find_by_connection(self, connection_id: str) -> Room | None:
        """查找包含该连接的房间。"""
        for room in self._rooms.values():
            if any(m.connection_id == connection_id for m in room.members):
                return room
        return None

    def remove(self, room_id: str) -> Room | None:
        """整体删除房间（只由延迟删除或显式空房检查调用）。"""
        room = self._rooms.pop(room_id, None)
        if room is not None:
            logger.info("房间已删除 | room=%s", room_id)
        return room

    def list_public(self) -> list[Room]:
        """返回所有公开房间，顺序不保证（展示前由调用方打乱）。"""
        return [room for room in self._rooms.values() if room.is_public]

    def count(self) -> RoomCounts:
        """按需重算房间数与成员总数。"""
        return RoomCounts(
            room_count=len(self._rooms),
            user_count=sum(len(room.members) for room in self._rooms.values()),
        )

    def __len__(self) -> int:
        return len(self._rooms)
