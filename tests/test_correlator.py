"""Tests for request/response correlation with the plugin."""

import asyncio
import json

import pytest

from devtools_bridge.services.correlator import RequestCorrelator
from devtools_bridge.utils.errors import (
    PeerCallError,
    PeerConnectionClosedError,
    PeerNotConnectedError,
    PeerTimeoutError,
)

from tests._helpers import FakeLink, settle


def reply(request_id, **fields):
    return json.dumps({"id": request_id, **fields})


class TestSend:

    @pytest.mark.asyncio
    async def test_no_peer_fails_immediately(self):
        correlator = RequestCorrelator(FakeLink(connected=False), timeout=5)

        with pytest.raises(PeerNotConnectedError, match="No connection to DevTools plugin"):
            await correlator.send("query_elements", {"selector": "div"})

        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_frame_shape_and_incrementing_ids(self, correlator, fake_link):
        first = asyncio.create_task(correlator.send("query_elements", {"selector": ".nav"}))
        second = asyncio.create_task(correlator.send("get_console_logs"))
        await settle()

        frames = [json.loads(f) for f in fake_link.sent]
        assert frames[0] == {
            "id": 1,
            "name": "query_elements",
            "arguments": {"selector": ".nav"},
            "jsonrpc": "2.0",
        }
        assert frames[1]["id"] == 2
        assert frames[1]["arguments"] == {}
        assert sorted(correlator.pending_ids()) == [1, 2]

        correlator.on_peer_message(reply(2, result=["log"]))
        correlator.on_peer_message(reply(1, result=[{"tag": "div"}]))
        assert await first == [{"tag": "div"}]
        assert await second == ["log"]
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_send_failure_rejects_entry(self, correlator, fake_link):
        fake_link.fail_with = RuntimeError("socket gone")

        with pytest.raises(PeerConnectionClosedError):
            await correlator.send("query_elements", {"selector": "a"})

        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_discards_entry(self, correlator):
        task = asyncio.create_task(correlator.send("get_console_logs"))
        await settle()
        assert correlator.pending_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert correlator.pending_count == 0


class TestResponses:

    @pytest.mark.asyncio
    async def test_resolves_at_most_once(self, correlator):
        task = asyncio.create_task(correlator.send("query_elements", {"selector": "p"}))
        await settle()

        correlator.on_peer_message(reply(1, result=["first"]))
        correlator.on_peer_message(reply(1, result=["second"]))

        assert await task == ["first"]
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_peer_error_object(self, correlator):
        task = asyncio.create_task(correlator.send("get_computed_styles", {"selector": "#x"}))
        await settle()

        correlator.on_peer_message(reply(1, error={"message": "Element not found"}))

        with pytest.raises(PeerCallError, match="Element not found"):
            await task

    @pytest.mark.asyncio
    async def test_peer_error_string(self, correlator):
        task = asyncio.create_task(correlator.send("get_computed_styles", {"selector": "#x"}))
        await settle()

        correlator.on_peer_message(reply(1, error="boom"))

        with pytest.raises(PeerCallError, match="boom"):
            await task

    @pytest.mark.asyncio
    async def test_garbage_and_unknown_ids_dropped(self, correlator):
        task = asyncio.create_task(correlator.send("get_console_logs"))
        await settle()

        correlator.on_peer_message("not json")
        correlator.on_peer_message(json.dumps({"result": []}))
        correlator.on_peer_message(reply(99, result=[]))
        correlator.on_peer_message(reply("1", result=["wrong type"]))
        correlator.on_peer_message(reply(True, result=["bool id"]))
        assert correlator.pending_count == 1

        correlator.on_peer_message(reply(1, result=[]))
        assert await task == []


class TestTimeouts:

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self):
        correlator = RequestCorrelator(FakeLink(), timeout=0.05)

        with pytest.raises(PeerTimeoutError, match="Request timed out after 0.05 seconds"):
            await correlator.send("query_elements", {"selector": "div"})

        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_dropped(self):
        correlator = RequestCorrelator(FakeLink(), timeout=0.05)
        with pytest.raises(PeerTimeoutError):
            await correlator.send("query_elements", {"selector": "div"})

        correlator.on_peer_message(reply(1, result=["late"]))
        assert correlator.pending_count == 0

    def test_default_timeout_message(self):
        correlator = RequestCorrelator(FakeLink())
        assert f"{correlator.timeout:g}" == "15"


class TestRejectAll:

    @pytest.mark.asyncio
    async def test_disconnect_rejects_three_pending(self, correlator):
        tasks = [
            asyncio.create_task(correlator.send("query_elements", {"selector": str(i)}))
            for i in range(3)
        ]
        await settle()
        assert correlator.pending_count == 3

        rejected = correlator.reject_all()

        assert rejected == 3
        assert correlator.pending_count == 0
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, PeerConnectionClosedError) for r in results)
        assert all(r.message == "WebSocket connection closed" for r in results)

    def test_reject_all_on_empty_table(self, correlator):
        assert correlator.reject_all() == 0

    @pytest.mark.asyncio
    async def test_oldest_pending_age(self, correlator):
        assert correlator.oldest_pending_age() is None
        task = asyncio.create_task(correlator.send("get_console_logs"))
        await settle()
        assert correlator.oldest_pending_age() >= 0
        correlator.reject_all()
        with pytest.raises(PeerConnectionClosedError):
            await task
