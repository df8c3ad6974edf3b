"""Tests for room records and invite tokens."""
import duckdb
import pytest

from app.chat.errors import ChatError, ErrorCode
from app.chat.rooms import RoomStore, normalize_room_id


@pytest.fixture
def connection():
    conn = duckdb.connect(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def rooms(connection, clock):
    return RoomStore(connection, clock=clock)


class TestNormalizeRoomId:
    @pytest.mark.parametrize("raw,expected", [
        ("General", "general"),
        ("  team-a.b_c ", "team-a.b_c"),
        ("ab", "ab"),
    ])
    def test_valid(self, raw, expected):
        assert normalize_room_id(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "a", "has space", "x" * 51, "émoji", "a/b", 123, ["room"], {"id": "room"}])
    def test_invalid(self, raw):
        with pytest.raises(ChatError) as exc:
            normalize_room_id(raw)
        assert exc.value.code == ErrorCode.VALIDATION


class TestRoomLifecycle:
    @pytest.mark.asyncio
    async def test_ensure_creates_open_room_once(self, rooms):
        first = await rooms.ensure("lobby")
        second = await rooms.ensure("lobby")

        assert first is second
        assert not first.is_protected
        assert first.owner is None

    @pytest.mark.asyncio
    async def test_create_protected_room(self, rooms, clock):
        room = await rooms.create("secret-club", "alice", "hash")

        assert room.is_protected
        assert room.is_owner("alice")
        assert room.createdAt == clock.now

    @pytest.mark.asyncio
    async def test_create_existing_room_conflicts(self, rooms):
        await rooms.ensure("lobby")

        with pytest.raises(ChatError) as exc:
            await rooms.create("lobby", "alice", "hash")

        assert exc.value.code == ErrorCode.CONFLICT

    @pytest.mark.asyncio
    async def test_require_missing_room(self, rooms):
        with pytest.raises(ChatError) as exc:
            await rooms.require("nowhere")
        assert exc.value.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_records_survive_a_fresh_store(self, connection, clock):
        await RoomStore(connection, clock=clock).create("club", "alice", "hash")

        reloaded = await RoomStore(connection, clock=clock).get("club")

        assert reloaded.owner == "alice"
        assert reloaded.secretHash == "hash"


class TestRoomMutations:
    @pytest.mark.asyncio
    async def test_set_fields_add_and_remove_once(self, rooms):
        await rooms.ensure("r")

        await rooms.add_to("r", "banned", "mallory")
        room = await rooms.add_to("r", "banned", "mallory")
        assert room.banned == ["mallory"]

        room = await rooms.remove_from("r", "banned", "mallory")
        assert room.banned == []

    @pytest.mark.asyncio
    async def test_unknown_set_field_is_rejected(self, rooms):
        await rooms.ensure("r")
        with pytest.raises(ValueError):
            await rooms.add_to("r", "topic", "x")

    @pytest.mark.asyncio
    async def test_failed_mutation_leaves_record_untouched(self, rooms):
        await rooms.ensure("r")

        def _fail(room):
            room.topic = "half-written"
            raise ChatError(ErrorCode.VALIDATION)

        with pytest.raises(ChatError):
            await rooms.update("r", _fail)

        assert (await rooms.get("r")).topic == ""

    @pytest.mark.asyncio
    async def test_set_fields_last_writer_wins(self, rooms):
        await rooms.ensure("r")
        await rooms.set_fields("r", topic="first")
        room = await rooms.set_fields("r", topic="second", slowModeSec=10)

        assert room.topic == "second"
        assert room.slowModeSec == 10

    @pytest.mark.asyncio
    async def test_pins_are_bounded(self, rooms):
        await rooms.ensure("r")
        await rooms.pin("r", "a", max_pins=2)
        await rooms.pin("r", "b", max_pins=2)
        room = await rooms.pin("r", "a", max_pins=2)
        assert room.pinnedMessageIds == ["a", "b"]

        with pytest.raises(ChatError) as exc:
            await rooms.pin("r", "c", max_pins=2)
        assert exc.value.code == ErrorCode.CONFLICT

        room = await rooms.unpin("r", "a")
        assert room.pinnedMessageIds == ["b"]

    @pytest.mark.asyncio
    async def test_announcements_keep_latest(self, rooms):
        await rooms.ensure("r")
        for text in ("one", "two", "three"):
            room = await rooms.announce("r", text, keep=2)

        assert [a.text for a in room.announcements] == ["two", "three"]


class TestInvites:
    @pytest.mark.asyncio
    async def test_single_use_invite_is_consumed_once(self, rooms):
        await rooms.create("club", "alice", "hash")
        invite = await rooms.create_invite("club", "alice")

        assert await rooms.consume_invite("club", invite.token) is True
        assert await rooms.consume_invite("club", invite.token) is False
        assert (await rooms.get_invite(invite.token)).usedAt is not None

    @pytest.mark.asyncio
    async def test_multi_use_invite(self, rooms):
        await rooms.create("club", "alice", "hash")
        invite = await rooms.create_invite("club", "alice", single_use=False)

        assert await rooms.consume_invite("club", invite.token) is True
        assert await rooms.consume_invite("club", invite.token) is True

    @pytest.mark.asyncio
    async def test_expired_invite_is_rejected(self, rooms, clock):
        await rooms.create("club", "alice", "hash")
        invite = await rooms.create_invite("club", "alice", ttl_minutes=10)

        clock.advance(10 * 60)

        assert await rooms.consume_invite("club", invite.token) is False

    @pytest.mark.asyncio
    async def test_invite_only_opens_its_own_room(self, rooms):
        await rooms.create("club", "alice", "hash")
        await rooms.create("other", "alice", "hash")
        invite = await rooms.create_invite("club", "alice")

        assert await rooms.consume_invite("other", invite.token) is False
        assert await rooms.consume_invite("club", invite.token) is True

    @pytest.mark.asyncio
    async def test_unknown_invite(self, rooms):
        assert await rooms.get_invite("nope") is None
        assert await rooms.consume_invite("club", "nope") is False
