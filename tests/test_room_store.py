"""
tests.test_room_store
~~~~~~~~~~~~~~~~~~~~~

RoomStore + Room 单元测试：容量约束、成员顺序、按需计数。
"""
from __future__ import annotations

import pytest

from chatroom.core.errors import RoomFull, RoomNotFound, ValidationError
from chatroom.schemas.rooms import Member
from chatroom.services.room_store import RoomStore, generate_room_id


def member(name: str, connection_id: str | None = None) -> Member:
    return Member(
        user_id=f"u-{name}",
        display_name=name,
        location_label="Earth",
        connection_id=connection_id or f"c-{name}",
    )


class TestCreate:
    """测试房间创建。"""

    def test_create_stores_room_with_first_member(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("alice"))

        assert store.get(room.id) is room
        assert [m.user_id for m in room.members] == ["u-alice"]
        assert room.capacity == 5

    def test_room_ids_are_unique(self) -> None:
        store = RoomStore()
        ids = {store.create(f"r{i}", "public", member(f"m{i}")).id for i in range(50)}

        assert len(ids) == 50

    def test_generated_id_format(self) -> None:
        room_id = generate_room_id()

        assert room_id.startswith("_")
        assert len(room_id) == 10

    @pytest.mark.parametrize(
        ("name", "visibility"),
        [("", "public"), ("x" * 21, "public"), ("Lobby", "secret")],
    )
    def test_create_revalidates(self, name: str, visibility: str) -> None:
        """存储层会再校验一次，非法输入不落库。"""
        store = RoomStore()

        with pytest.raises(ValidationError):
            store.create(name, visibility, member("alice"))
        assert len(store) == 0

    def test_escaped_length_counts_visible_characters(self) -> None:
        """转义后的实体按原字符计长，19 个可见字符的名字不会被误判超长。"""
        store = RoomStore()

        room = store.create("Tom &amp; Jerry&#x27;s Place", "public", member("alice"))

        assert room.name == "Tom &amp; Jerry&#x27;s Place"
        with pytest.raises(ValidationError):
            store.create("&amp;" * 21, "public", member("bob"))


class TestMembership:
    """测试成员增删与容量约束。"""

    def test_sixth_join_is_rejected(self) -> None:
        """第 6 次加入总是 RoomFull，成员列表不变。"""
        store = RoomStore()
        room = store.create("Lobby", "public", member("m0"))
        for i in range(1, 5):
            store.add_member(room.id, member(f"m{i}"))

        before = list(room.members)
        with pytest.raises(RoomFull):
            store.add_member(room.id, member("m5"))

        assert room.members == before
        assert len(room.members) == 5

    def test_add_to_missing_room(self) -> None:
        with pytest.raises(RoomNotFound):
            RoomStore().add_member("_nope", member("bob"))

    def test_add_member_uses_same_checks_as_create(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("alice"))

        store.add_member(room.id, member("Tom &amp; Jerry&#x27;s"))
        with pytest.raises(ValidationError):
            store.add_member(room.id, member("y" * 21))

        assert len(room.members) == 2

    def test_remove_keeps_relative_order(self) -> None:
        """移除中间成员后，展示序号按剩余顺序重新计算。"""
        store = RoomStore()
        room = store.create("Lobby", "public", member("a"))
        store.add_member(room.id, member("b"))
        store.add_member(room.id, member("c"))

        result = store.remove_member(room.id, user_id="u-b")

        assert result is not None
        assert result[1].user_id == "u-b"
        info = room.info()
        assert [(m.position, m.display_name) for m in info.members] == [(1, "a"), (2, "c")]

    def test_remove_by_connection(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("a", "conn-1"))
        store.add_member(room.id, member("b", "conn-2"))

        _, removed = store.remove_member(room.id, connection_id="conn-2")

        assert removed.display_name == "b"
        assert store.find_by_connection("conn-2") is None
        assert store.find_by_connection("conn-1") is room

    def test_remove_missing_returns_none(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("a"))

        assert store.remove_member(room.id, user_id="u-zzz") is None
        assert store.remove_member("_nope", user_id="u-a") is None

    def test_remove_requires_exactly_one_key(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("a"))

        with pytest.raises(ValueError):
            store.remove_member(room.id)

    def test_empty_room_stays_until_removed(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("a"))
        store.remove_member(room.id, user_id="u-a")

        assert store.get(room.id) is room
        assert room.is_empty
        store.remove(room.id)
        assert store.get(room.id) is None


class TestQueries:
    """测试公开列表和计数。"""

    def test_list_public_excludes_private(self) -> None:
        store = RoomStore()
        public = store.create("Open", "public", member("a"))
        store.create("Secret", "private", member("b"))

        assert store.list_public() == [public]

    def test_count_matches_members(self) -> None:
        """count() 等于所有房间成员数之和，无漂移。"""
        store = RoomStore()
        r1 = store.create("One", "public", member("a"))
        r2 = store.create("Two", "private", member("b"))
        store.add_member(r1.id, member("c"))
        store.remove_member(r2.id, user_id="u-b")

        counts = store.count()

        assert counts.room_count == 2
        assert counts.user_count == sum(len(r.members) for r in (r1, r2)) == 2

    def test_snapshot_hides_connection_id(self) -> None:
        store = RoomStore()
        room = store.create("Lobby", "public", member("a", "secret-conn"))

        dumped = room.info().model_dump()

        assert "secret-conn" not in str(dumped)
        assert dumped["member_count"] == 1
