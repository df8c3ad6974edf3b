"""Tests for the DuckDB message store."""
import duckdb
import pytest

from app.chat.cursor import Cursor, cursor_for, decode_cursor
from app.chat.errors import ChatError, ErrorCode
from app.chat.schemas import ChatMessage, MessageType, Poll, PollOption
from app.chat.store import MessageStore


@pytest.fixture
def store(clock):
    connection = duckdb.connect(":memory:")
    yield MessageStore(connection, clock=clock)
    connection.close()


def text(room: str, body: str, username: str = "alice", **kwargs) -> ChatMessage:
    return ChatMessage(roomId=room, username=username, text=body, **kwargs)


async def append_many(store, clock, room, bodies, step=1.0):
    messages = []
    for body in bodies:
        messages.append(await store.append(text(room, body)))
        clock.advance(step)
    return messages


class TestAppend:
    @pytest.mark.asyncio
    async def test_assigns_ts_and_id(self, store, clock):
        message = await store.append(text("r", "hello"))

        assert message.ts == clock.now
        assert len(message.id) == 20
        assert (await store.get(message.id)).text == "hello"

    @pytest.mark.asyncio
    async def test_ids_sort_in_creation_order_within_same_timestamp(self, store):
        first = await store.append(text("r", "a"))
        second = await store.append(text("r", "b"))

        assert first.ts == second.ts
        assert first.id < second.id

    @pytest.mark.asyncio
    async def test_keeps_preset_timestamp(self, store):
        message = await store.append(text("r", "x", ts=42.0))
        assert message.ts == 42.0

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("deadbeef") is None

    @pytest.mark.asyncio
    async def test_get_in_room_rejects_other_rooms(self, store):
        message = await store.append(text("a", "x"))

        with pytest.raises(ChatError) as exc:
            await store.get_in_room("b", message.id)

        assert exc.value.code == ErrorCode.NOT_FOUND


class TestRangeBeforeCursor:
    @pytest.mark.asyncio
    async def test_pages_backward_oldest_first(self, store, clock):
        m1, m2, m3, m4, m5 = await append_many(store, clock, "r", ["m1", "m2", "m3", "m4", "m5"])

        page1 = await store.history_page("r", None, 2)
        page2 = await store.history_page("r", page1.nextCursor, 2)
        page3 = await store.history_page("r", page2.nextCursor, 2)
        page4 = await store.history_page("r", page3.nextCursor, 2)

        assert [m.text for m in page1.items] == ["m4", "m5"]
        assert [m.text for m in page2.items] == ["m2", "m3"]
        assert [m.text for m in page3.items] == ["m1"]
        assert page3.nextCursor is not None
        assert page4.items == []
        assert page4.nextCursor is None

    @pytest.mark.asyncio
    async def test_ties_on_timestamp_broken_by_id(self, store):
        same_ts = [await store.append(text("r", f"t{i}")) for i in range(4)]

        page1 = await store.range_before("r", None, 2)
        page2 = await store.range_before("r", cursor_for(page1[0]), 2)

        assert [m.id for m in page1] == [same_ts[2].id, same_ts[3].id]
        assert [m.id for m in page2] == [same_ts[0].id, same_ts[1].id]

    @pytest.mark.asyncio
    async def test_appends_during_scan_do_not_shift_pages(self, store, clock):
        await append_many(store, clock, "r", ["m1", "m2", "m3", "m4"])
        page1 = await store.history_page("r", None, 2)

        await append_many(store, clock, "r", ["late1", "late2"])
        page2 = await store.history_page("r", page1.nextCursor, 2)

        assert [m.text for m in page2.items] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_malformed_cursor_starts_from_newest(self, store, clock):
        await append_many(store, clock, "r", ["m1", "m2", "m3"])

        page = await store.history_page("r", "garbage!!", 2)

        assert [m.text for m in page.items] == ["m2", "m3"]

    @pytest.mark.asyncio
    async def test_rooms_are_isolated(self, store, clock):
        await append_many(store, clock, "a", ["a1"])
        await append_many(store, clock, "b", ["b1", "b2"])

        assert [m.text for m in await store.range_before("a", None, 10)] == ["a1"]
        assert await store.count("b") == 2

    @pytest.mark.asyncio
    async def test_cursor_survives_encoding(self, store, clock):
        await append_many(store, clock, "r", ["m1", "m2", "m3"])
        page = await store.history_page("r", None, 1)

        assert decode_cursor(page.nextCursor) == Cursor(page.items[0].ts, page.items[0].id)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_concurrent_reactions_are_not_lost(self, store):
        import asyncio

        message = await store.append(text("r", "react to me"))

        await asyncio.gather(
            store.update(message.id, lambda m: m.toggle_reaction("+1", "bob")),
            store.update(message.id, lambda m: m.toggle_reaction("+1", "carol")),
            store.update(message.id, lambda m: m.toggle_reaction("tada", "bob")),
        )

        stored = await store.get(message.id)
        assert sorted(stored.reactions["+1"]) == ["bob", "carol"]
        assert stored.reactions["tada"] == ["bob"]

    @pytest.mark.asyncio
    async def test_mutator_error_writes_nothing(self, store):
        message = await store.append(text("r", "before"))

        def _fail(m):
            m.text = "after"
            raise ChatError(ErrorCode.FORBIDDEN)

        with pytest.raises(ChatError):
            await store.update(message.id, _fail)

        assert (await store.get(message.id)).text == "before"

    @pytest.mark.asyncio
    async def test_room_and_timestamp_are_immutable(self, store):
        message = await store.append(text("r", "x"))

        def _tamper(m):
            m.roomId = "elsewhere"
            m.ts = 0.0

        updated = await store.update(message.id, _tamper)

        assert updated.roomId == "r"
        assert updated.ts == message.ts

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(ChatError) as exc:
            await store.update("00", lambda m: None)
        assert exc.value.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_edit_is_visible_to_search(self, store):
        message = await store.append(text("r", "old words"))

        def _edit(m):
            m.text = "brand new"

        await store.update(message.id, _edit)

        assert await store.search("r", "old", 10) == []
        assert [m.id for m in await store.search("r", "brand", 10)] == [message.id]


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_record(self, store):
        message = await store.append(text("r", "bye"))

        assert await store.delete(message.id) is True
        assert await store.get(message.id) is None
        assert await store.delete(message.id) is False

    @pytest.mark.asyncio
    async def test_get_many_skips_deleted_ids(self, store):
        a = await store.append(text("r", "a"))
        b = await store.append(text("r", "b"))
        await store.delete(a.id)

        assert [m.id for m in await store.get_many([a.id, b.id])] == [b.id]

    @pytest.mark.asyncio
    async def test_reply_snapshots_follow_parent(self, store):
        parent = await store.append(text("r", "original"))
        child = await store.append(text("r", "reply", username="bob", parent=parent.snapshot()))

        parent.text = "edited"
        await store.refresh_parent_snapshots(parent)
        assert (await store.get(child.id)).parent.text == "edited"

        await store.delete(parent.id)
        await store.mark_parent_deleted(parent.id)
        snapshot = (await store.get(child.id)).parent
        assert snapshot.deleted is True
        assert snapshot.text is None


class TestSearchAndReceipts:
    @pytest.mark.asyncio
    async def test_search_is_case_insensitive_newest_first(self, store, clock):
        await append_many(store, clock, "r", ["Deploy today", "unrelated", "deploy tomorrow"])

        results = await store.search("r", "DEPLOY", 10)

        assert [m.text for m in results] == ["deploy tomorrow", "Deploy today"]

    @pytest.mark.asyncio
    async def test_search_requires_every_term_and_is_bounded(self, store, clock):
        await append_many(store, clock, "r", ["red apple", "green apple", "red car"])

        assert [m.text for m in await store.search("r", "red apple", 10)] == ["red apple"]
        assert len(await store.search("r", "apple", 1)) == 1
        assert await store.search("r", "   ", 10) == []

    @pytest.mark.asyncio
    async def test_search_covers_poll_questions(self, store):
        poll = Poll(question="Lunch where?", options=[PollOption(text="a"), PollOption(text="b")])
        await store.append(ChatMessage(roomId="r", username="a", type=MessageType.POLL, poll=poll))

        assert len(await store.search("r", "lunch", 10)) == 1

    @pytest.mark.asyncio
    async def test_mark_seen_up_to_is_inclusive_and_idempotent(self, store, clock):
        m1, m2, m3 = await append_many(store, clock, "r", ["m1", "m2", "m3"])

        assert await store.mark_seen_up_to("r", cursor_for(m2), "bob") == 2
        assert await store.mark_seen_up_to("r", cursor_for(m2), "bob") == 0

        assert (await store.get(m1.id)).seenBy == ["bob"]
        assert (await store.get(m2.id)).seenBy == ["bob"]
        assert (await store.get(m3.id)).seenBy == []
