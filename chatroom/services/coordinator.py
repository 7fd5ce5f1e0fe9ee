"""
chatroom.services.coordinator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

成员关系协调器 —— 创建 / 加入 / 离开 / 断线的状态机。

每个房间的状态:
  - absent：不存在
  - active(n)：0 <= n < 容量（n == 0 时等待延迟删除）
  - full：n == 容量

协调器是 ``RoomStore``、``IdentityRegistry`` 和 ``DeletionScheduler`` 唯一的写入方。
所有入站事件以及延迟删除的触发都在同一把 ``asyncio.Lock`` 内完成
（读-改-写 + 广播入队），任何操作都看不到其他操作的中间状态；
加入时的取消删除与删除触发之间也因此严格有序。
广播在锁内只把事件放入各连接的发送队列，不等待网络发送，慢客户端不会占住这把锁。

被拒绝的操作不会修改任何共享状态，唯一的例外是违规内容触发的封禁。
"""
from __future__ import annotations

import asyncio

from chatroom.core.errors import Banned, DuplicateSession, RoomNotFound, ValidationError
from chatroom.core.logging import get_logger
from chatroom.core.settings import settings
from chatroom.core.text_filters import ProfanityFilter, get_profanity_filter, sanitize
from chatroom.schemas.events import (
    ChatTextPayload,
    CreateRoomPayload,
    JoinRoomPayload,
    LeaveRoomPayload,
)
from chatroom.schemas.rooms import VISIBILITIES, Member, RoomCounts, StatsData
from chatroom.services.broadcaster import Connection, EventBroadcaster
from chatroom.services.deletion_scheduler import DeletionScheduler
from chatroom.services.identity import IdentityRegistry
from chatroom.services.room_store import Room, RoomStore

logger = get_logger(__name__)


class MembershipCoordinator:
    """房间生命周期与成员关系协调器（每个应用进程一个实例）。

    - ``connect`` / ``disconnect``              → 在线会话登记与断线清理
    - ``create_room`` / ``join_room`` / ``leave_room`` → 房间成员变更
    - ``search_room`` / ``list_rooms``          → 房间查询
    - ``send_message`` / ``send_typing``        → 房间内文本转发（含敏感词封禁）

    Attributes:
        broadcaster: 事件广播器。
        identity: 在线会话与封禁登记表。
        store: 房间存储。
        scheduler: 空房间延迟删除调度器。
        profanity: 敏感词过滤器。
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster | None = None,
        identity: IdentityRegistry | None = None,
        store: RoomStore | None = None,
        profanity: ProfanityFilter | None = None,
        deletion_delay: float | None = None,
        ban_duration: float | None = None,
    ) -> None:
        self.broadcaster = broadcaster or EventBroadcaster()
        self.identity = identity or IdentityRegistry()
        self.store = store or RoomStore(
            capacity=settings.ROOM_CAPACITY,
            max_field_length=settings.MAX_FIELD_LENGTH,
        )
        self.profanity = profanity or get_profanity_filter()
        self.scheduler = DeletionScheduler(
            self._expire_room,
            delay=settings.ROOM_DELETION_DELAY_SECONDS if deletion_delay is None else deletion_delay,
        )
        self.ban_duration = settings.BAN_DURATION_SECONDS if ban_duration is None else ban_duration
        self._lock = asyncio.Lock()

    # ── 校验 ──────────────────────────────────────────────────────────

    def _clean_field(self, label: str, raw: str, max_length: int | None = None) -> str:
        """校验并清洗一个名称类字段。

        顺序：非空 → 原始长度 → 清洗 → 清洗后非空 → 敏感词。
        创建 / 加入时命中敏感词只拒绝，不封禁。
        """
        limit = max_length or self.store.max_field_length
        if not raw or not raw.strip():
            raise ValidationError(f"{label}不能为空")
        if len(raw) > limit:
            raise ValidationError(f"{label}不能超过 {limit} 个字符")
        cleaned = sanitize(raw)
        if not cleaned:
            raise ValidationError(f"{label}不能为空")
        if self.profanity.contains_offensive_word(cleaned):
            raise ValidationError(f"{label}包含不当词汇")
        return cleaned

    @staticmethod
    def _clean_user_id(raw: str) -> str:
        user_id = sanitize(raw)
        if not user_id:
            raise ValidationError("用户标识不能为空")
        return user_id

    def _ensure_not_banned(self, user_id: str) -> None:
        expires_at = self.identity.ban_expiry(user_id)
        if expires_at is not None:
            raise Banned(user_id, expires_at)

    def _ensure_not_in_room(self, connection_id: str) -> None:
        # 每个连接同时只在一个房间内，断线清理据此最多移除一条成员记录
        current = self.store.find_by_connection(connection_id)
        if current is not None:
            raise ValidationError(f"请先离开当前房间: {current.id}")

    def _speaker_id(self, connection_id: str, claimed: str) -> str:
        """优先使用连接登记的身份，避免借他人 user_id 发言或被误封。"""
        return self.identity.user_for_connection(connection_id) or self._clean_user_id(claimed)

    # ── 连接 ──────────────────────────────────────────────────────────

    def attach(self, connection_id: str, connection: Connection) -> None:
        """登记传输层连接（尚未声明身份）。"""
        self.broadcaster.register(connection_id, connection)

    async def connect(self, connection_id: str, user_id: str, request_id: str | None = None) -> None:
        """登记在线会话，下发计数和公开房间列表。

        Raises:
            Banned: 用户处于封禁期。
            DuplicateSession: 该身份已在另一个仍存活的连接上在线。
            ValidationError: 该连接已登记为另一个用户。
        """
        user_id = self._clean_user_id(user_id)
        async with self._lock:
            self._ensure_not_banned(user_id)
            # 一个连接只对应一个身份，断线清理据此注销唯一的会话
            bound = self.identity.user_for_connection(connection_id)
            if bound is not None and bound != user_id:
                raise ValidationError(f"该连接已登记为其他用户: {bound}")
            session = self.identity.session(user_id)
            if (
                session is not None
                and session.connection_id != connection_id
                and self.broadcaster.is_connected(session.connection_id)
            ):
                logger.info("重复会话被拒绝 | user=%s | 已在线连接=%s", user_id, session.connection_id)
                raise DuplicateSession(user_id)

            self.identity.mark_connected(user_id, connection_id)
            logger.info("用户上线 | user=%s | 在线: %d", user_id, self.identity.active_count)

            await self.broadcaster.counts_changed(self.store.count())
            await self.broadcaster.existing_rooms(connection_id, self.store.list_public(), request_id)

    async def disconnect(
        self, connection_id: str, user_id: str | None = None, transport_closed: bool = False,
    ) -> None:
        """注销会话，并把该连接从所在房间中移除（最多一条）。

        既用于客户端主动发送的 ``disconnect``，也用于传输层断开；可重复调用。
        """
        async with self._lock:
            if transport_closed:
                self.broadcaster.unregister(connection_id)

            owner = self.identity.user_for_connection(connection_id)
            if owner is not None:
                self.identity.mark_disconnected(owner, connection_id)
                logger.info("用户下线 | user=%s | 在线: %d", owner, self.identity.active_count)
            elif user_id is not None:
                logger.debug("断开请求中的身份未登记在此连接 | user=%s", user_id)

            room = self.store.find_by_connection(connection_id)
            if room is None:
                return
            removed = self.store.remove_member(room.id, connection_id=connection_id)
            if removed is not None:
                await self._after_removal(*removed)

    # ── 房间成员变更 ──────────────────────────────────────────────────

    async def create_room(
        self, connection_id: str, payload: CreateRoomPayload, request_id: str | None = None,
    ) -> Room:
        """创建房间并让发起者成为第一位成员。

        Raises:
            ValidationError: 字段缺失 / 超长 / 含敏感词，或该连接已在某个房间内。
            Banned: 用户处于封禁期。
        """
        display_name = self._clean_field("昵称", payload.display_name)
        location_label = self._clean_field("所在地", payload.location_label)
        room_name = self._clean_field("房间名", payload.room_name)
        claimed_user_id = self._clean_user_id(payload.user_id)
        if payload.visibility not in VISIBILITIES:
            raise ValidationError(f"无效的房间类型: {payload.visibility}")

        async with self._lock:
            user_id = self._speaker_id(connection_id, claimed_user_id)
            self._ensure_not_banned(user_id)
            self._ensure_not_in_room(connection_id)

            member = Member(
                user_id=user_id,
                display_name=display_name,
                location_label=location_label,
                connection_id=connection_id,
            )
            room = self.store.create(room_name, payload.visibility, member)
            self.broadcaster.join_channel(room.id, connection_id)

            await self.broadcaster.room_created(room, connection_id)
            await self.broadcaster.room_joined(connection_id, room, member, request_id)
            await self.broadcaster.counts_changed(self.store.count())
            return room

    async def join_room(
        self, connection_id: str, payload: JoinRoomPayload, request_id: str | None = None,
    ) -> Room:
        """加入已有房间；成功时取消该房间的待执行删除。

        Raises:
            ValidationError: 字段非法，或该连接已在某个房间内。
            Banned: 用户处于封禁期。
            RoomNotFound: 房间不存在。
            RoomFull: 房间已满员。
        """
        room_id = payload.room_id.strip() if payload.room_id else ""
        if not room_id:
            raise ValidationError("房间 ID 不能为空")
        if len(room_id) > self.store.max_field_length:
            raise ValidationError(f"房间 ID 不能超过 {self.store.max_field_length} 个字符")
        display_name = self._clean_field("昵称", payload.display_name)
        location_label = self._clean_field("所在地", payload.location_label)
        claimed_user_id = self._clean_user_id(payload.user_id)

        async with self._lock:
            user_id = self._speaker_id(connection_id, claimed_user_id)
            self._ensure_not_banned(user_id)
            self._ensure_not_in_room(connection_id)

            member = Member(
                user_id=user_id,
                display_name=display_name,
                location_label=location_label,
                connection_id=connection_id,
            )
            room = self.store.add_member(room_id, member)
            if self.scheduler.cancel(room_id):
                logger.info("房间在宽限期内被重新加入 | room=%s", room_id)
            self.broadcaster.join_channel(room_id, connection_id)
            logger.info(
                "用户加入房间 | room=%s | user=%s | 人数=%d/%d",
                room_id, user_id, len(room.members), room.capacity,
            )

            await self.broadcaster.room_updated(room)
            await self.broadcaster.room_joined(connection_id, room, member, request_id)
            await self.broadcaster.user_joined(room_id, member, exclude=connection_id)
            await self.broadcaster.counts_changed(self.store.count())
            return room

    async def leave_room(self, connection_id: str, payload: LeaveRoomPayload) -> Room | None:
        """离开房间；请求方连接不是该房间成员时静默忽略。

        只移除由该连接持有的成员记录，``payload.user_id`` 不参与匹配，
        连接无法把别人移出房间。

        Raises:
            RoomNotFound: 房间不存在。
        """
        async with self._lock:
            if self.store.get(payload.room_id) is None:
                raise RoomNotFound(payload.room_id)
            removed = self.store.remove_member(payload.room_id, connection_id=connection_id)
            if removed is None:
                logger.debug(
                    "离开请求忽略，连接不在房间内 | room=%s | conn=%s | user=%s",
                    payload.room_id, connection_id, payload.user_id,
                )
                return None
            await self._after_removal(*removed)
            return removed[0]

    async def _after_removal(self, room: Room, member: Member) -> None:
        """成员移除后的公共收尾：退订频道、空房安排删除、广播。调用方需持有锁。"""
        self.broadcaster.leave_channel(room.id, member.connection_id)
        if room.is_empty:
            self.scheduler.arm(room.id)
        logger.info(
            "用户离开房间 | room=%s | user=%s | 剩余=%d",
            room.id, member.user_id, len(room.members),
        )

        await self.broadcaster.room_updated(room)
        await self.broadcaster.user_left(room.id, member.user_id)
        await self.broadcaster.counts_changed(self.store.count())

    async def _expire_room(self, room_id: str) -> None:
        """延迟删除到期：在锁内复查房间仍为空后再删除。"""
        async with self._lock:
            if self.scheduler.is_armed(room_id):
                # 期间房间又被清空并重新安排了删除，交给新的任务处理
                return
            room = self.store.get(room_id)
            if room is None or not room.is_empty:
                logger.debug("延迟删除跳过 | room=%s", room_id)
                return
            self.store.remove(room_id)
            self.broadcaster.drop_channel(room_id)

            await self.broadcaster.room_removed(room_id)
            await self.broadcaster.counts_changed(self.store.count())

    # ── 查询 ──────────────────────────────────────────────────────────

    async def search_room(
        self, connection_id: str, room_id: str, request_id: str | None = None,
    ) -> Room | None:
        """按 ID 查找房间（空房间在删除前仍可查到），结果只回复给请求方。"""
        room = self.store.get(room_id)
        await self.broadcaster.search_result(connection_id, room, request_id)
        return room

    async def list_rooms(self, connection_id: str, request_id: str | None = None) -> None:
        """回复随机打乱的公开房间列表。"""
        await self.broadcaster.existing_rooms(connection_id, self.store.list_public(), request_id)

    def counts(self) -> RoomCounts:
        return self.store.count()

    def stats(self) -> StatsData:
        counts = self.store.count()
        return StatsData(
            room_count=counts.room_count,
            user_count=counts.user_count,
            active_users=self.identity.active_count,
        )

    # ── 房间内文本 ────────────────────────────────────────────────────

    async def send_message(self, connection_id: str, payload: ChatTextPayload) -> None:
        """转发聊天消息给房间内其他成员；含敏感词则封禁发送者。"""
        await self._relay(connection_id, payload, "message", allow_empty=False)

    async def send_typing(self, connection_id: str, payload: ChatTextPayload) -> None:
        """转发"正在输入"内容给房间内其他成员；含敏感词同样封禁。"""
        await self._relay(connection_id, payload, "typing", allow_empty=True)

    async def _relay(
        self, connection_id: str, payload: ChatTextPayload, event: str, allow_empty: bool,
    ) -> None:
        async with self._lock:
            user_id = self._speaker_id(connection_id, payload.user_id)
            self._ensure_not_banned(user_id)

            text = sanitize(payload.text)
            if self.profanity.contains_offensive_word(text):
                expires_at = self.identity.ban(user_id, self.ban_duration)
                logger.warning("检测到违规内容，已封禁 | user=%s | room=%s | event=%s", user_id, payload.room_id, event)
                raise Banned(user_id, expires_at)

            if self.store.get(payload.room_id) is None:
                raise RoomNotFound(payload.room_id)
            if not self.broadcaster.in_channel(payload.room_id, connection_id):
                raise ValidationError("你不在该房间中")
            if not text and not allow_empty:
                raise ValidationError("消息不能为空")
            if len(payload.text) > settings.MAX_MESSAGE_LENGTH:
                raise ValidationError(f"消息不能超过 {settings.MAX_MESSAGE_LENGTH} 个字符")

            logger.debug("房间消息 | room=%s | user=%s | event=%s", payload.room_id, user_id, event)
            await self.broadcaster.broadcast_room(
                payload.room_id,
                event,
                {"room_id": payload.room_id, "user_id": user_id, "text": text},
                exclude=connection_id,
            )

    async def shutdown(self) -> None:
        """取消所有待执行的延迟删除并停止发送协程（应用关闭时调用）。"""
        self.scheduler.shutdown()
        self.broadcaster.shutdown()
