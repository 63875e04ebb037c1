"""
Tests for the notification poller.

Tests cover:
1. Breaker gating (blocked polls make no request, probes close/reopen)
2. Failure classes (transport error, timeout, non-2xx, malformed body)
3. Change detection (reordered payloads are no-ops, new records persist once)
4. Mutations (mark read / mark all read)
5. Listeners, initialization from storage and read accessors
"""

import asyncio
import json

import httpx
import pytest

from notisync.core.circuit_breaker import CircuitStatus
from notisync.services.notification_client import MARK_ALL_READ_PATH, MARK_READ_PATH, UNREAD_PATH
from notisync.services.notification_poller import NotificationPoller, PollOutcome


V1 = [
    {"folder": "/a", "timestamp": 1, "status": "completed", "message": "Done"},
    {"folder": "/b", "timestamp": 2, "status": "working"},
]
V1_REORDERED = [
    {"status": "working", "timestamp": 2, "folder": "/b"},
    {"message": "Done", "timestamp": 1, "status": "completed", "folder": "/a"},
]
V2 = V1_REORDERED + [{"folder": "/c", "timestamp": 3}]


class StubClient:
    """Client whose fetch waits until released; used for timeout and cancellation tests."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_unread(self):
        self.started.set()
        await self.release.wait()
        return httpx.Response(200, json={"notifications": []})


def open_breaker(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


class TestBreakerGating:
    @pytest.mark.asyncio
    async def test_blocked_poll_makes_no_request(self, poller, breaker, server, backend):
        open_breaker(breaker)

        outcome = await poller.poll()

        assert outcome == PollOutcome.BLOCKED
        assert server.calls() == []
        assert backend.set_calls == 0
        assert poller.current_set.version == ""

    @pytest.mark.asyncio
    async def test_failures_open_breaker(self, poller, breaker, server):
        for _ in range(3):
            server.queue("GET", UNREAD_PATH, httpx.ConnectError("connection refused"))
            assert await poller.poll() == PollOutcome.FAILED

        assert breaker.state == CircuitStatus.OPEN
        assert await poller.poll() == PollOutcome.BLOCKED
        assert len(server.calls("GET", UNREAD_PATH)) == 3

    @pytest.mark.asyncio
    async def test_successful_probe_closes_breaker(self, poller, breaker, server, clock):
        open_breaker(breaker)
        clock.advance(ms=5000)
        server.queue_notifications(V1)

        assert await poller.poll() == PollOutcome.CHANGED

        assert breaker.state == CircuitStatus.CLOSED
        assert breaker.get_stats().consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_failed_probe_doubles_backoff(self, poller, breaker, server, clock):
        open_breaker(breaker)
        clock.advance(ms=5000)
        server.queue("GET", UNREAD_PATH, httpx.Response(502))

        assert await poller.poll() == PollOutcome.FAILED

        stats = breaker.get_stats()
        assert stats.status == CircuitStatus.OPEN
        assert stats.current_backoff_ms == 10000

    @pytest.mark.asyncio
    async def test_cancelled_probe_releases_probe_slot(self, breaker, store, clock):
        client = StubClient()
        poller = NotificationPoller(client, breaker, store, fetch_timeout_ms=60000)
        open_breaker(breaker)
        clock.advance(ms=5000)

        task = asyncio.create_task(poller.poll())
        await client.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stats = breaker.get_stats()
        assert stats.status == CircuitStatus.OPEN
        assert stats.probe_in_flight is False


class TestFailureClasses:
    @pytest.mark.asyncio
    async def test_transport_error_keeps_cached_set(self, poller, breaker, server, backend):
        server.queue_notifications(V1)
        await poller.poll()
        writes = backend.set_calls

        server.queue("GET", UNREAD_PATH, httpx.ReadError("connection reset"))
        outcome = await poller.poll()

        assert outcome == PollOutcome.FAILED
        assert breaker.get_stats().consecutive_failures == 1
        assert len(poller.current_set) == 2
        assert backend.set_calls == writes

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 404, 500, 503])
    async def test_non_2xx_is_a_failure(self, poller, breaker, server, status_code):
        server.queue_notifications(V1)
        await poller.poll()

        server.queue("GET", UNREAD_PATH, httpx.Response(status_code, json={"notifications": []}))
        outcome = await poller.poll()

        assert outcome == PollOutcome.FAILED
        assert breaker.get_stats().consecutive_failures == 1
        assert len(poller.current_set) == 2

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, breaker, store, backend):
        client = StubClient()
        poller = NotificationPoller(client, breaker, store, fetch_timeout_ms=10)

        outcome = await poller.poll()

        assert outcome == PollOutcome.FAILED
        assert breaker.get_stats().consecutive_failures == 1
        assert backend.set_calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_a_failure(self, poller, breaker, server):
        server.queue("GET", UNREAD_PATH, RuntimeError("boom"))

        assert await poller.poll() == PollOutcome.FAILED
        assert breaker.get_stats().consecutive_failures == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, content=b"<html>proxy error</html>"),
            httpx.Response(200, json=[{"folder": "/a", "timestamp": 1}]),
            httpx.Response(200, json={"notifications": "none"}),
            httpx.Response(200, json={"notifications": [{"folder": "/a", "timestamp": "later"}]}),
        ],
    )
    async def test_malformed_body_keeps_cached_set(self, poller, breaker, server, backend, response):
        server.queue_notifications(V1)
        await poller.poll()
        version = poller.current_set.version

        server.queue("GET", UNREAD_PATH, response)
        outcome = await poller.poll()

        assert outcome == PollOutcome.MALFORMED
        assert poller.current_set.version == version
        assert backend.set_calls == 1
        # The remote answered, so the breaker counts it as reachable
        assert breaker.get_stats().consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_null_notifications_mean_empty(self, poller, server):
        server.queue_notifications(V1)
        await poller.poll()

        server.queue("GET", UNREAD_PATH, httpx.Response(200, json={"notifications": None}))

        assert await poller.poll() == PollOutcome.CHANGED
        assert len(poller.current_set) == 0


class TestChangeDetection:
    @pytest.mark.asyncio
    async def test_reordered_payload_is_a_no_op_and_new_record_persists_once(self, poller, server, backend):
        notified = []
        poller.add_listener(notified.append)
        server.queue_notifications(V1, V1_REORDERED, V2)

        assert await poller.poll() == PollOutcome.CHANGED
        assert poller.current_set.version == "/a:1|/b:2"
        writes, events = backend.set_calls, len(notified)

        assert await poller.poll() == PollOutcome.UNCHANGED
        assert backend.set_calls == writes
        assert len(notified) == events

        assert await poller.poll() == PollOutcome.CHANGED
        assert backend.set_calls == writes + 1
        assert len(notified) == events + 1
        assert notified[-1].version == "/a:1|/b:2|/c:3"

    @pytest.mark.asyncio
    async def test_persisted_payload_keeps_extra_fields(self, poller, server, backend):
        record = {"folder": "/a", "timestamp": 1, "status": "completed", "project": {"name": "api"}}
        server.queue_notifications([record])

        await poller.poll()

        assert backend.data["notifications"] == [record]

    @pytest.mark.asyncio
    async def test_status_change_alone_is_not_a_new_version(self, poller, server, backend):
        server.queue_notifications(
            [{"folder": "/a", "timestamp": 1, "status": "working"}],
            [{"folder": "/a", "timestamp": 1, "status": "completed"}],
        )
        await poller.poll()
        notified = []
        poller.add_listener(notified.append)

        assert await poller.poll() == PollOutcome.UNCHANGED
        assert backend.set_calls == 1
        assert notified == []
        assert poller.current_set.records[0].status == "completed"
        assert poller.get_notification_status("/a").status == "completed"
        assert backend.data["notifications"][0]["status"] == "working"

    @pytest.mark.asyncio
    async def test_empty_response_on_empty_cache_is_unchanged(self, poller, backend):
        assert await poller.poll() == PollOutcome.UNCHANGED
        assert backend.set_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_polls_write_once(self, poller, server, backend):
        server.default_notifications = V1

        outcomes = await asyncio.gather(poller.poll(), poller.poll())

        assert sorted(o.value for o in outcomes) == ["changed", "unchanged"]
        assert backend.set_calls == 1

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_roll_back_cache(self, poller, server, backend):
        backend.fail_sets = 3
        server.queue_notifications(V1)

        assert await poller.poll() == PollOutcome.CHANGED

        assert poller.current_set.version == "/a:1|/b:2"
        assert poller.has_error() is True
        assert poller.get_error_status().consecutive_failures == 3

    @pytest.mark.asyncio
    async def test_refresh_polls(self, poller, server):
        server.queue_notifications(V1)

        assert await poller.refresh() == PollOutcome.CHANGED
        assert len(server.calls("GET", UNREAD_PATH)) == 1


class TestListeners:
    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self, poller, server):
        seen = []

        async def async_listener(notification_set):
            seen.append(("async", notification_set.version))

        poller.add_listener(lambda s: seen.append(("sync", s.version)))
        poller.add_listener(async_listener)
        server.queue_notifications(V1)

        await poller.poll()

        assert seen == [("sync", "/a:1|/b:2"), ("async", "/a:1|/b:2")]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, poller, server):
        seen = []

        def broken(_):
            raise RuntimeError("popup closed")

        poller.add_listener(broken)
        poller.add_listener(seen.append)
        server.queue_notifications(V1)

        assert await poller.poll() == PollOutcome.CHANGED
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_removed_listener_is_not_called(self, poller, server):
        seen = []
        poller.add_listener(seen.append)
        poller.remove_listener(seen.append)
        poller.remove_listener(seen.append)
        server.queue_notifications(V1)

        await poller.poll()

        assert seen == []

    @pytest.mark.asyncio
    async def test_listener_can_mark_all_read(self, poller, server, backend):
        results = []

        async def clear_on_first_change(notification_set):
            if not results:
                results.append(await poller.mark_all_read())

        poller.add_listener(clear_on_first_change)
        server.queue_notifications(V1)

        outcome = await asyncio.wait_for(poller.poll(), timeout=1)

        assert outcome == PollOutcome.CHANGED
        assert results[0].success is True
        assert len(poller.current_set) == 0
        assert backend.data["notifications"] == []


class TestInitialize:
    @pytest.mark.asyncio
    async def test_seeds_cache_from_storage(self, poller, server, backend):
        backend.data["notifications"] = V1
        await poller.initialize()

        assert poller.current_set.version == "/a:1|/b:2"

        server.queue_notifications(V1_REORDERED)
        assert await poller.poll() == PollOutcome.UNCHANGED
        assert backend.set_calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stored", ["garbage", {"folder": "/a"}, [{"folder": "/a", "timestamp": "x"}]])
    async def test_invalid_stored_data_starts_empty(self, poller, backend, stored):
        backend.data["notifications"] = stored

        await poller.initialize()

        assert poller.current_set.version == ""
        assert len(poller.current_set) == 0

    @pytest.mark.asyncio
    async def test_unreadable_storage_starts_empty(self, poller, backend):
        backend.data["notifications"] = V1
        backend.fail_gets = 3

        await poller.initialize()

        assert len(poller.current_set) == 0


class TestMutations:
    @pytest.mark.asyncio
    async def test_mark_read_removes_folder_after_remote_accepts(self, poller, server, backend):
        server.queue_notifications(V1)
        await poller.poll()
        notified = []
        poller.add_listener(notified.append)

        result = await poller.mark_read("/A/")

        assert result.success is True
        request = server.calls("POST", MARK_READ_PATH)[0]
        assert json.loads(request.content) == {"folder": "/A/"}
        assert poller.current_set.version == "/b:2"
        assert backend.data["notifications"] == [{"folder": "/b", "timestamp": 2, "status": "working"}]
        assert len(notified) == 1

    @pytest.mark.asyncio
    async def test_mark_read_rejected_keeps_cache(self, poller, server, backend):
        server.queue_notifications(V1)
        await poller.poll()
        server.queue("POST", MARK_READ_PATH, httpx.Response(500))

        result = await poller.mark_read("/a")

        assert result.success is False
        assert "500" in result.error
        assert poller.current_set.version == "/a:1|/b:2"
        assert backend.set_calls == 1

    @pytest.mark.asyncio
    async def test_mark_read_transport_error(self, poller, server):
        server.queue_notifications(V1)
        await poller.poll()
        server.queue("POST", MARK_READ_PATH, httpx.ConnectError("offline"))

        result = await poller.mark_read("/a")

        assert result.success is False
        assert result.error
        assert len(poller.current_set) == 2

    @pytest.mark.asyncio
    async def test_mark_read_unknown_folder_is_a_no_op_locally(self, poller, server, backend):
        server.queue_notifications(V1)
        await poller.poll()

        result = await poller.mark_read("/nowhere")

        assert result.success is True
        assert backend.set_calls == 1

    @pytest.mark.asyncio
    async def test_mutations_bypass_breaker(self, poller, breaker, server):
        open_breaker(breaker)

        result = await poller.mark_all_read()

        assert result.success is True
        assert len(server.calls("DELETE", MARK_ALL_READ_PATH)) == 1
        assert breaker.get_stats().consecutive_failures == 3

    @pytest.mark.asyncio
    async def test_mark_all_read_clears_cache(self, poller, server, backend):
        server.queue_notifications(V1)
        await poller.poll()

        result = await poller.mark_all_read()

        assert result.success is True
        assert len(poller.current_set) == 0
        assert backend.data["notifications"] == []
        assert poller.badge_text() == ""


class TestAccessors:
    @pytest.mark.asyncio
    async def test_notification_status_by_folder(self, poller, server):
        server.queue_notifications(V1)
        await poller.poll()

        status = poller.get_notification_status("/A")
        assert status.has_notification is True
        assert status.status == "completed"
        assert status.notification["message"] == "Done"

        assert poller.get_notification_status("/z").has_notification is False

    @pytest.mark.asyncio
    async def test_badge_text_and_notifications(self, poller, server):
        assert poller.badge_text() == ""
        server.queue_notifications(V1)
        await poller.poll()

        assert poller.badge_text() == "2"
        assert [r.folder for r in poller.get_notifications()] == ["/a", "/b"]

    def test_circuit_breaker_stats(self, poller, breaker):
        breaker.record_failure()
        assert poller.get_circuit_breaker_stats().consecutive_failures == 1
