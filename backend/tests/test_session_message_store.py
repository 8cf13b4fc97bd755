"""Tests for MessageStore pagination, live merging and pending sends."""
import asyncio
import math
from unittest.mock import AsyncMock

import pytest

from schoolchat.messages.schemas import MessagePage, PaginationInfo
from schoolchat.realtime import events
from schoolchat.session.api_client import ChatApiError
from schoolchat.session.message_store import MessageStore

from conftest import FakeConnection, make_message


class PagedApi:
    """In-memory history served with the server's page arithmetic."""

    def __init__(self, history=None):
        self.history = history or {}
        self.calls = []

    def add(self, message):
        self.history.setdefault(message.group, []).append(message)

    async def get_group_messages(self, group_id, page=1, limit=20):
        self.calls.append((group_id, page))
        messages = self.history.get(group_id, [])
        total = len(messages)
        end = total - (page - 1) * limit
        chunk = messages[max(end - limit, 0):end] if end > 0 else []
        total_pages = math.ceil(total / limit)
        return MessagePage(
            messages=chunk,
            pagination=PaginationInfo(
                currentPage=page,
                totalPages=total_pages,
                totalMessages=total,
                hasNextPage=page < total_pages,
                hasMore=page < total_pages,
            ),
        )


def history(group="g1", count=45, sender="v1"):
    return [make_message(f"{group}-m{i}", group=group, sender=sender, minute=i) for i in range(count)]


def ids(store):
    return [m.id for m in store.messages]


@pytest.fixture
def connection():
    return FakeConnection()


def make_store(api, connection, **kwargs):
    kwargs.setdefault("page_size", 20)
    kwargs.setdefault("max_fetch_failures", 3)
    return MessageStore(api, connection, "u1", **kwargs)


class TestPagination:
    @pytest.mark.asyncio
    async def test_pages_through_45_messages(self, connection):
        api = PagedApi({"g1": history(count=45)})
        store = make_store(api, connection)

        await store.select_group("g1")
        assert ids(store) == [f"g1-m{i}" for i in range(25, 45)]
        assert store.has_more_messages is True
        assert store.cursor_page == 1

        assert await store.load_older() is True
        assert len(store.messages) == 40
        assert ids(store)[0] == "g1-m5"
        assert store.has_more_messages is True
        assert store.cursor_page == 2

        assert await store.load_older() is True
        assert len(store.messages) == 45
        assert ids(store) == [f"g1-m{i}" for i in range(45)]
        assert store.has_more_messages is False

    @pytest.mark.asyncio
    async def test_terminal_state_is_idempotent(self, connection):
        api = PagedApi({"g1": history(count=45)})
        store = make_store(api, connection)
        await store.select_group("g1")

        for _ in range(10):
            await store.load_older()

        assert store.has_more_messages is False
        calls = len(api.calls)
        assert await store.load_older() is False
        assert len(api.calls) == calls
        assert len(store.messages) == 45

    @pytest.mark.asyncio
    async def test_empty_group(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        assert store.messages == ()
        assert store.has_more_messages is False
        assert await store.load_older() is False

    @pytest.mark.asyncio
    async def test_empty_page_ends_pagination(self, connection):
        api = AsyncMock()
        api.get_group_messages.side_effect = [
            MessagePage(messages=history(count=20), pagination=PaginationInfo(hasNextPage=True)),
            MessagePage(messages=[], pagination=PaginationInfo(hasNextPage=True)),
        ]
        store = make_store(api, connection)
        await store.select_group("g1")

        await store.load_older()

        assert store.has_more_messages is False
        assert len(store.messages) == 20

    @pytest.mark.asyncio
    async def test_no_group_selected(self, connection):
        api = PagedApi({"g1": history()})
        store = make_store(api, connection)
        assert await store.load_older() is False
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_deselect_clears_buffer(self, connection):
        store = make_store(PagedApi({"g1": history()}), connection)
        await store.select_group("g1")
        await store.select_group(None)
        assert store.active_group_id is None
        assert store.messages == ()


class TestLiveMerge:
    @pytest.mark.asyncio
    async def test_live_messages_interleaved_with_paging_never_duplicate(self, connection):
        api = PagedApi({"g1": history(count=45)})
        store = make_store(api, connection)
        await store.select_group("g1")

        # Two live messages shift offset pagination by two
        for i in (45, 46):
            message = make_message(f"g1-m{i}", minute=i)
            api.add(message)
            assert store.on_live_message(message) is True

        await store.load_older()
        await store.load_older()
        await store.load_older()

        assert len(ids(store)) == len(set(ids(store))) == 47
        assert ids(store) == [f"g1-m{i}" for i in range(47)]
        assert store.has_more_messages is False

    def test_duplicate_live_message_ignored(self, connection):
        store = make_store(PagedApi(), connection)
        store.active_group_id = "g1"
        message = make_message("m1")

        assert store.on_live_message(message) is True
        assert store.on_live_message(message) is False
        assert ids(store) == ["m1"]

    def test_out_of_order_live_message_inserted_sorted(self, connection):
        store = make_store(PagedApi(), connection)
        store.active_group_id = "g1"
        for msg_id, minute in [("a", 1), ("c", 5), ("b", 3), ("z", 0), ("d", 5)]:
            store.on_live_message(make_message(msg_id, minute=minute))

        assert ids(store) == ["z", "a", "b", "c", "d"]
        stamps = [m.createdAt for m in store.messages]
        assert stamps == sorted(stamps)

    def test_other_group_ignored(self, connection):
        store = make_store(PagedApi(), connection)
        store.active_group_id = "g1"
        assert store.on_live_message(make_message("m1", group="g2")) is False
        assert store.messages == ()

    @pytest.mark.asyncio
    async def test_live_message_during_initial_load_kept(self, connection):
        gate = asyncio.Event()
        api = PagedApi({"g1": history(count=5)})
        serve = api.get_group_messages

        async def slow(group_id, page=1, limit=20):
            await gate.wait()
            return await serve(group_id, page, limit)

        api.get_group_messages = slow
        store = make_store(api, connection)

        task = asyncio.create_task(store.select_group("g1"))
        await asyncio.sleep(0)
        assert store.is_loading_messages is True
        store.on_live_message(make_message("live", minute=99))
        gate.set()
        await task

        assert ids(store) == [f"g1-m{i}" for i in range(5)] + ["live"]
        assert store.is_loading_messages is False

    @pytest.mark.asyncio
    async def test_reload_active_group_replaces_buffer(self, connection):
        api = PagedApi({"g1": history(count=45)})
        store = make_store(api, connection)
        await store.select_group("g1")
        await store.load_older()
        live = make_message("live", minute=99)
        store.on_live_message(live)
        assert len(store.messages) == 41

        assert await store.load_initial("g1") is True

        # Page 1 again plus the live message newer than it
        assert ids(store) == [f"g1-m{i}" for i in range(25, 45)] + ["live"]
        assert store.cursor_page == 1
        assert store.is_loading_messages is False
        assert await store.load_older() is True
        assert ids(store)[0] == "g1-m5"


class TestFailures:
    @pytest.mark.asyncio
    async def test_initial_load_failure(self, connection):
        api = AsyncMock()
        api.get_group_messages.side_effect = ChatApiError("boom")
        store = make_store(api, connection)

        await store.select_group("g1")

        assert store.messages == ()
        assert store.has_more_messages is False
        assert store.is_loading_messages is False

    @pytest.mark.asyncio
    async def test_reselect_retries(self, connection):
        api = AsyncMock()
        api.get_group_messages.side_effect = [
            ChatApiError("boom"),
            MessagePage(messages=history(count=3), pagination=PaginationInfo()),
        ]
        store = make_store(api, connection)

        await store.select_group("g1")
        await store.select_group("g1")

        assert len(store.messages) == 3

    @pytest.mark.asyncio
    async def test_load_older_failure_keeps_state_then_gives_up(self, connection):
        real = PagedApi({"g1": history(count=45)})
        api = AsyncMock()
        api.get_group_messages.side_effect = real.get_group_messages
        store = make_store(api, connection, max_fetch_failures=3)
        await store.select_group("g1")

        api.get_group_messages.side_effect = ChatApiError("offline")
        for _ in range(2):
            assert await store.load_older() is False
            assert store.cursor_page == 1
            assert store.has_more_messages is True
            assert store.is_loading_messages is False
            assert len(store.messages) == 20

        await store.load_older()
        assert store.has_more_messages is False
        assert await store.load_older() is False
        assert api.get_group_messages.await_count == 4

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, connection):
        real = PagedApi({"g1": history(count=80)})
        api = AsyncMock()
        api.get_group_messages.side_effect = real.get_group_messages
        store = make_store(api, connection, max_fetch_failures=2)
        await store.select_group("g1")

        api.get_group_messages.side_effect = ChatApiError("flaky")
        await store.load_older()
        api.get_group_messages.side_effect = real.get_group_messages
        await store.load_older()
        api.get_group_messages.side_effect = ChatApiError("flaky")
        await store.load_older()

        assert store.has_more_messages is True
        assert store.cursor_page == 2


class TestRaceSafety:
    @pytest.mark.asyncio
    async def test_stale_initial_page_discarded_on_group_switch(self, connection):
        gate = asyncio.Event()
        api = PagedApi({"g1": history("g1", 30), "g2": history("g2", 3)})
        serve = api.get_group_messages

        async def slow_for_g1(group_id, page=1, limit=20):
            if group_id == "g1":
                await gate.wait()
            return await serve(group_id, page, limit)

        api.get_group_messages = slow_for_g1
        store = make_store(api, connection)

        first = asyncio.create_task(store.select_group("g1"))
        await asyncio.sleep(0)
        await store.select_group("g2")
        gate.set()
        await first

        assert store.active_group_id == "g2"
        assert ids(store) == ["g2-m0", "g2-m1", "g2-m2"]
        assert store.has_more_messages is False
        assert store.is_loading_messages is False

    @pytest.mark.asyncio
    async def test_stale_older_page_discarded_on_group_switch(self, connection):
        gate = asyncio.Event()
        api = PagedApi({"g1": history("g1", 45), "g2": history("g2", 25)})
        serve = api.get_group_messages

        async def slow_older_pages(group_id, page=1, limit=20):
            if group_id == "g1" and page > 1:
                await gate.wait()
            return await serve(group_id, page, limit)

        api.get_group_messages = slow_older_pages
        store = make_store(api, connection)
        await store.select_group("g1")

        older = asyncio.create_task(store.load_older())
        await asyncio.sleep(0)
        await store.select_group("g2")
        gate.set()

        assert await older is False
        assert all(m.group == "g2" for m in store.messages)
        assert len(store.messages) == 20
        assert store.cursor_page == 1
        assert store.has_more_messages is True

    @pytest.mark.asyncio
    async def test_load_initial_for_inactive_group_ignored(self, connection):
        api = PagedApi({"g1": history("g1", 45), "g2": history("g2", 5)})
        store = make_store(api, connection)
        await store.select_group("g1")
        calls = len(api.calls)

        assert await store.load_initial("g2") is False

        assert len(api.calls) == calls
        assert store.is_loading_messages is False
        assert all(m.group == "g1" for m in store.messages)
        assert await store.load_older() is True
        assert len(store.messages) == 40

    @pytest.mark.asyncio
    async def test_only_one_load_older_in_flight(self, connection):
        gate = asyncio.Event()
        api = PagedApi({"g1": history(count=45)})
        serve = api.get_group_messages

        async def slow(group_id, page=1, limit=20):
            if page > 1:
                await gate.wait()
            return await serve(group_id, page, limit)

        api.get_group_messages = slow
        store = make_store(api, connection)
        await store.select_group("g1")

        first = asyncio.create_task(store.load_older())
        await asyncio.sleep(0)
        assert await store.load_older() is False
        gate.set()
        assert await first is True
        assert store.cursor_page == 2


class TestSend:
    @pytest.mark.asyncio
    async def test_send_is_not_optimistic(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")

        pending = store.send("  hello ")

        assert pending is not None
        assert pending.content == "hello"
        assert store.messages == ()
        assert store.pending == (pending,)
        assert connection.sent_events(events.SEND_MESSAGE) == [
            {"sender": "u1", "content": "hello", "group": "g1"}
        ]

    @pytest.mark.asyncio
    async def test_echo_resolves_pending(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        store.send("hello")

        echo = make_message("srv-1", group="g1", sender="u1", content="hello")
        assert store.on_live_message(echo) is True

        assert ids(store) == ["srv-1"]
        assert store.pending == ()

    @pytest.mark.asyncio
    async def test_other_senders_do_not_resolve_pending(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        store.send("hello")

        store.on_live_message(make_message("x", group="g1", sender="v1", content="hello"))

        assert len(store.pending) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_blank_content_not_sent(self, connection, content):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        assert store.send(content) is None
        assert connection.sent == []

    def test_no_active_group(self, connection):
        store = make_store(PagedApi(), connection)
        assert store.send("hello") is None
        assert connection.sent == []

    @pytest.mark.asyncio
    async def test_offline_send_dropped(self):
        connection = FakeConnection(connected=False)
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        assert store.send("hello") is None
        assert store.pending == ()

    @pytest.mark.asyncio
    async def test_group_switch_clears_pending(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        store.send("hello")
        await store.select_group("g2")
        assert store.pending == ()

    @pytest.mark.asyncio
    async def test_too_long_content_not_sent(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")

        assert store.send("x" * 2001) is None
        assert store.pending == ()
        assert connection.sent == []
        assert store.send("x" * 2000) is not None

    @pytest.mark.asyncio
    async def test_reject_pending_drops_oldest(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        first = store.send("one")
        second = store.send("two")

        assert store.reject_pending("You are not a member of this group") is first
        assert store.pending == (second,)
        store.reject_pending("again")
        assert store.reject_pending("nothing left") is None

    @pytest.mark.asyncio
    async def test_drop_pending(self, connection):
        store = make_store(PagedApi(), connection)
        await store.select_group("g1")
        store.send("one")
        store.send("two")

        assert len(store.drop_pending()) == 2
        assert store.pending == ()
        assert store.drop_pending() == ()
