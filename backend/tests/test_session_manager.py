"""Tests for the room session manager: joins, resume, bans, presence."""
import pytest

from app.chat.connection import RecordingConnection
from app.chat.errors import ChatError, ErrorCode
from app.chat.schemas import ChatMessage


async def expect_error(code: ErrorCode, coro):
    with pytest.raises(ChatError) as exc:
        await coro
    assert exc.value.code == code
    return exc.value


def last_names(conn: RecordingConnection, room_id: str):
    names = [d["names"] for d in conn.data("presenceNames") if d["roomId"] == room_id]
    return names[-1] if names else None


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_joins_global_and_pushes_initial_state(self, chat, connect):
        alice = await connect("alice")

        assert [f["type"] for f in alice.frames] == [
            "connectionStateChanged",
            "historyPage",
            "roomMetadata",
            "presenceCount",
            "presenceNames",
        ]
        assert alice.data("connectionStateChanged")[0] == {"state": "connected", "username": "alice"}
        assert alice.room_id == "global"
        assert alice.state == "in_room"
        assert last_names(alice, "global") == ["alice"]

    @pytest.mark.asyncio
    async def test_initial_history_page_is_newest_first_page(self, chat, connect, clock):
        for i in range(3):
            await chat.store.append(ChatMessage(roomId="global", username="bob", text=f"m{i}"))
            clock.advance(1)

        alice = await connect("alice")

        page = alice.data("historyPage")[0]
        assert page["roomId"] == "global"
        assert [m["text"] for m in page["items"]] == ["m0", "m1", "m2"]
        assert page["nextCursor"] is not None

    @pytest.mark.asyncio
    async def test_presence_tracks_names_not_sockets(self, chat, connect):
        first = await connect("alice")
        await connect("alice")
        await connect("bob")

        assert chat.presence.count("global") == 3
        assert last_names(first, "global") == ["alice", "bob"]
        assert first.data("presenceCount")[-1] == {"roomId": "global", "count": 3}

    @pytest.mark.asyncio
    async def test_banned_from_global_stays_unjoined(self, chat):
        await chat.rooms.ensure("global")
        await chat.rooms.add_to("global", "banned", "mallory")
        conn = RecordingConnection("mallory")

        result = await chat.sessions.connect(conn)

        assert result["ok"] is False
        assert result["error"] == "BANNED"
        assert conn.room_id is None
        assert chat.presence.count("global") == 0


class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_into_open_room(self, chat, connect):
        alice = await connect("alice")
        await chat.sessions.join_room(alice, "lobby")

        again = await connect("alice", room="lobby")

        assert again.room_id == "lobby"

    @pytest.mark.asyncio
    async def test_unknown_or_invalid_last_room_falls_back_to_global(self, connect):
        assert (await connect("alice", room="never-created")).room_id == "global"
        assert (await connect("alice", room="not a room!")).room_id == "global"

    @pytest.mark.asyncio
    async def test_protected_room_resume_requires_membership(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")

        assert (await connect("bob", room="priv")).room_id == "priv"
        assert (await connect("carol", room="priv")).room_id == "global"
        assert (await connect("root_admin", room="priv")).room_id == "priv"

    @pytest.mark.asyncio
    async def test_banned_identity_does_not_resume(self, chat, connect):
        alice = await connect("alice")
        await chat.sessions.join_room(alice, "lobby")
        await chat.rooms.add_to("lobby", "banned", "alice")

        assert (await connect("alice", room="lobby")).room_id == "global"


class TestProtectedRooms:
    @pytest.mark.asyncio
    async def test_wrong_secret_then_right_secret(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")
        carol = await connect("carol")

        await expect_error(ErrorCode.FORBIDDEN, chat.sessions.join_room(carol, "priv", secret="wrong"))
        assert chat.presence.names("priv") == ["bob"]
        assert carol.state == "unjoined"

        result = await chat.sessions.join_room(carol, "priv", secret="pw123")

        assert result == {"ok": True, "roomId": "priv"}
        assert chat.presence.names("priv") == ["bob", "carol"]
        assert last_names(bob, "priv") == ["bob", "carol"]

    @pytest.mark.asyncio
    async def test_explicit_join_requires_credentials_even_for_members(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")
        carol = await connect("carol")
        await chat.sessions.join_room(carol, "priv", secret="pw123")

        await expect_error(ErrorCode.FORBIDDEN, chat.sessions.join_room(carol, "priv"))

    @pytest.mark.asyncio
    async def test_single_use_invite(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")
        invite = await chat.rooms.create_invite("priv", "bob")
        carol = await connect("carol")
        dave = await connect("dave")

        await chat.sessions.join_room(carol, "priv", invite=invite.token)
        await expect_error(
            ErrorCode.FORBIDDEN, chat.sessions.join_room(dave, "priv", invite=invite.token)
        )

        assert chat.presence.names("priv") == ["bob", "carol"]
        assert (await connect("carol", room="priv")).room_id == "priv"

    @pytest.mark.asyncio
    async def test_invite_does_not_bypass_ban(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")
        await chat.rooms.add_to("priv", "banned", "carol")
        invite = await chat.rooms.create_invite("priv", "bob")
        carol = await connect("carol")

        await expect_error(ErrorCode.BANNED, chat.sessions.join_room(carol, "priv", invite=invite.token))

        assert (await chat.rooms.get_invite(invite.token)).usedAt is None

    @pytest.mark.asyncio
    async def test_ban_removes_live_connections(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")
        carol = await connect("carol")
        await chat.sessions.join_room(carol, "priv", secret="pw123")

        result = await chat.commands.execute(bob, {"name": "ban", "args": ["carol"]})

        assert result["dropped"] == 1
        assert carol.room_id is None
        assert carol.data("connectionStateChanged")[-1] == {"state": "banned", "roomId": "priv"}
        assert chat.presence.names("priv") == ["bob"]
        assert last_names(bob, "priv") == ["bob"]
        await expect_error(ErrorCode.BANNED, chat.sessions.join_room(carol, "priv", secret="pw123"))


class TestCreateRoom:
    @pytest.mark.asyncio
    async def test_creator_owns_and_enters_room(self, chat, connect):
        bob = await connect("bob")

        result = await chat.sessions.create_room(bob, "Priv", "pw123")

        room = await chat.rooms.get("priv")
        assert result == {"ok": True, "roomId": "priv"}
        assert room.owner == "bob"
        assert room.secretHash != "pw123"
        assert bob.room_id == "priv"
        assert chat.presence.count("global") == 0
        assert bob.data("roomMetadata")[-1]["isProtected"] is True

    @pytest.mark.asyncio
    async def test_existing_room_conflicts(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")

        await expect_error(ErrorCode.CONFLICT, chat.sessions.create_room(bob, "priv", "other"))
        await expect_error(ErrorCode.CONFLICT, chat.sessions.create_room(bob, "global", "pw"))

    @pytest.mark.asyncio
    async def test_invalid_input(self, chat, connect):
        bob = await connect("bob")

        await expect_error(ErrorCode.VALIDATION, chat.sessions.create_room(bob, "priv", ""))
        await expect_error(ErrorCode.VALIDATION, chat.sessions.create_room(bob, "priv", None))
        await expect_error(ErrorCode.VALIDATION, chat.sessions.create_room(bob, "x", "pw"))
        await expect_error(ErrorCode.VALIDATION, chat.sessions.create_room(bob, 123, "pw"))
        await expect_error(ErrorCode.VALIDATION, chat.sessions.join_room(bob, 123))
        assert bob.room_id == "global"


class TestLeaveAndDisconnect:
    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, chat, connect):
        alice = await connect("alice")
        bob = await connect("bob")

        assert chat.sessions.leave_room(alice) == {"ok": True, "roomId": "global"}
        assert chat.sessions.leave_room(alice) == {"ok": True}
        assert alice.state == "unjoined"
        assert last_names(bob, "global") == ["bob"]

    @pytest.mark.asyncio
    async def test_joining_another_room_leaves_the_first(self, chat, connect):
        alice = await connect("alice")

        await chat.sessions.join_room(alice, "lobby")

        assert chat.presence.count("global") == 0
        assert chat.presence.names("lobby") == ["alice"]

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up(self, chat, connect):
        alice = await connect("alice")
        bob = await connect("bob")
        chat.relay.set_typing(bob, {"isTyping": True})

        await chat.sessions.disconnect(bob)

        assert bob.state == "disconnected"
        assert bob.id not in chat.sessions.connections
        assert chat.presence.names("global") == ["alice"]
        assert alice.data("typingIndicator")[-1] == {
            "roomId": "global", "username": "bob", "isTyping": False,
        }
        await chat.sessions.disconnect(bob)

    @pytest.mark.asyncio
    async def test_closed_connection_receives_nothing(self, chat, connect):
        alice = await connect("alice")
        await chat.sessions.disconnect(alice)
        alice.clear()

        await connect("bob")

        assert alice.frames == []


class TestReadAuthorization:
    @pytest.mark.asyncio
    async def test_authorize_read(self, chat, connect):
        bob = await connect("bob")
        await chat.sessions.create_room(bob, "priv", "pw123")
        await chat.rooms.add_to("priv", "banned", "mallory")

        assert (await chat.sessions.authorize_read("priv", "bob")).roomId == "priv"
        assert (await chat.sessions.authorize_read("global", None)).roomId == "global"
        await expect_error(ErrorCode.FORBIDDEN, chat.sessions.authorize_read("priv", "carol"))
        await expect_error(ErrorCode.FORBIDDEN, chat.sessions.authorize_read("priv", None))
        await expect_error(ErrorCode.BANNED, chat.sessions.authorize_read("priv", "mallory"))
        await expect_error(ErrorCode.NOT_FOUND, chat.sessions.authorize_read("nowhere", "bob"))
