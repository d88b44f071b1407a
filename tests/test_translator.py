"""Tests for the MCP stdio front end."""

import asyncio
import json

import pytest

from devtools_bridge import __version__
from devtools_bridge.services.correlator import RequestCorrelator
from devtools_bridge.services.translator import FrameBuffer, ProtocolTranslator
from devtools_bridge.utils.errors import INTERNAL_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND

from tests._helpers import FakeLink, settle


def responses(buffer):
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


def request(request_id, method, params=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


@pytest.fixture
def translator(correlator, stdout_buffer):
    return ProtocolTranslator(correlator, output=stdout_buffer)


class TestFrameBuffer:

    def test_partial_frame_reassembled(self):
        frames = FrameBuffer()
        assert frames.feed(b'{"jsonrpc":"2.0","id":1,') == []
        assert frames.pending > 0
        assert frames.feed(b'"method":"tools/list"}\n{"id"') == ['{"jsonrpc":"2.0","id":1,"method":"tools/list"}']
        assert frames.feed(b':2}\r\n\n') == ['{"id":2}']
        assert frames.pending == 0

    def test_multibyte_character_split_across_chunks(self):
        frames = FrameBuffer()
        data = '{"q":"ü"}\n'.encode("utf-8")
        split = data.index(b"\xc3") + 1
        assert frames.feed(data[:split]) == []
        assert frames.feed(data[split:]) == ['{"q":"ü"}']


class TestLocalMethods:

    def test_initialize(self, translator, stdout_buffer):
        translator.handle_line(request(0, "initialize", {"clientInfo": {"name": "test"}}))

        [response] = responses(stdout_buffer)
        assert response["id"] == 0
        assert response["result"] == {
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "serverInfo": {"name": "obsidian-devtools", "version": __version__},
        }

    def test_initialize_with_null_client_info(self, translator, stdout_buffer):
        translator.handle_line(request(1, "initialize", {"clientInfo": None}))
        translator.handle_line(request(2, "initialize", {"clientInfo": "cli"}))
        translator.handle_line(request(3, "initialize", ["positional"]))

        assert [r["result"]["serverInfo"]["name"] for r in responses(stdout_buffer)] == ["obsidian-devtools"] * 3

    def test_tools_list_returns_catalog_under_same_id(self, translator, stdout_buffer):
        translator.handle_line(request(1, "tools/list"))

        [response] = responses(stdout_buffer)
        assert response["jsonrpc"] == "2.0"
        assert response["id"] == 1
        tools = response["result"]["tools"]
        assert [t["name"] for t in tools] == ["query_elements", "get_computed_styles", "get_console_logs"]
        assert tools[0]["inputSchema"]["required"] == ["selector"]
        assert tools[2]["inputSchema"]["properties"]["limit"]["default"] == 100

    def test_resources(self, translator, stdout_buffer):
        translator.handle_line(request("a", "resources/list"))
        translator.handle_line(request("b", "resources/templates/list"))

        first, second = responses(stdout_buffer)
        assert first == {"jsonrpc": "2.0", "id": "a", "result": {"resources": []}}
        assert second == {"jsonrpc": "2.0", "id": "b", "result": {"resourceTemplates": []}}

    def test_initialized_notification_gets_no_reply(self, translator, stdout_buffer):
        translator.handle_line(json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}))
        assert stdout_buffer.getvalue() == ""

    def test_initialized_with_id_acknowledged(self, translator, stdout_buffer):
        translator.handle_line(request(5, "notifications/initialized"))
        assert responses(stdout_buffer) == [{"jsonrpc": "2.0", "id": 5, "result": {}}]


class TestMalformedInput:

    def test_unparseable_line_dropped(self, translator, stdout_buffer):
        translator.handle_line('{"jsonrpc": "2.0", "id": 1, "method": ')
        translator.handle_line("[1, 2, 3]")
        assert stdout_buffer.getvalue() == ""

    def test_unknown_method(self, translator, stdout_buffer):
        translator.handle_line(request(3, "prompts/list"))

        [response] = responses(stdout_buffer)
        assert response["id"] == 3
        assert response["error"] == {"code": METHOD_NOT_FOUND, "message": "Unknown method: prompts/list"}

    def test_missing_method_with_id(self, translator, stdout_buffer):
        translator.handle_line(json.dumps({"jsonrpc": "2.0", "id": 4}))

        [response] = responses(stdout_buffer)
        assert response["id"] == 4
        assert response["error"]["code"] == INVALID_REQUEST

    def test_unknown_notification_ignored(self, translator, stdout_buffer):
        translator.handle_line(json.dumps({"jsonrpc": "2.0", "method": "notifications/cancelled"}))
        assert stdout_buffer.getvalue() == ""

    def test_handler_exception_becomes_internal_error(self, translator, stdout_buffer, monkeypatch):
        def explode(message):
            raise RuntimeError("kaputt")

        monkeypatch.setitem(translator._handlers, "tools/list", explode)
        translator.handle_line(request(9, "tools/list"))

        [response] = responses(stdout_buffer)
        assert response["id"] == 9
        assert response["error"] == {"code": INTERNAL_ERROR, "message": "kaputt"}


class TestToolsCall:

    @pytest.mark.asyncio
    async def test_not_connected(self, stdout_buffer):
        link = FakeLink(connected=False)
        correlator = RequestCorrelator(link, timeout=1.0)
        translator = ProtocolTranslator(correlator, output=stdout_buffer)

        translator.handle_line(request(11, "tools/call", {"name": "query_elements", "arguments": {"selector": "div"}}))
        await settle()

        [response] = responses(stdout_buffer)
        assert response["id"] == 11
        assert response["error"]["message"] == "Not connected to DevTools plugin"
        assert correlator.pending_count == 0
        assert link.sent == []

    @pytest.mark.asyncio
    async def test_result_delivered_under_original_id(self, translator, correlator, fake_link, stdout_buffer):
        translator.handle_line(request("req-42", "tools/call", {"name": "query_elements", "arguments": {"selector": "div"}}))
        await settle()

        # nothing is written synchronously for tools/call
        assert stdout_buffer.getvalue() == ""
        frame = json.loads(fake_link.sent[0])
        assert frame["name"] == "query_elements"
        assert frame["id"] == 1

        correlator.on_peer_message(json.dumps({"id": frame["id"], "result": [{"tag": "div"}, {"tag": "p"}]}))
        await translator.wait_idle()

        assert responses(stdout_buffer) == [
            {"jsonrpc": "2.0", "id": "req-42", "result": [{"tag": "div"}, {"tag": "p"}]}
        ]

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self, stdout_buffer):
        correlator = RequestCorrelator(FakeLink(), timeout=0.05)
        translator = ProtocolTranslator(correlator, output=stdout_buffer)

        translator.handle_line(request(12, "tools/call", {"name": "get_console_logs", "arguments": {"limit": 5}}))
        await asyncio.wait_for(translator.wait_idle(), timeout=2)

        [response] = responses(stdout_buffer)
        assert response["id"] == 12
        assert response["error"]["message"] == "Request timed out after 0.05 seconds"
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_peer_error_forwarded(self, translator, correlator, fake_link, stdout_buffer):
        translator.handle_line(request(13, "tools/call", {"name": "get_computed_styles", "arguments": {"selector": "#nope"}}))
        await settle()

        correlator.on_peer_message(json.dumps({"id": 1, "error": {"message": "Element not found"}}))
        await translator.wait_idle()

        [response] = responses(stdout_buffer)
        assert response["id"] == 13
        assert response["error"]["message"] == "Element not found"

    @pytest.mark.asyncio
    async def test_missing_tool_name(self, translator, stdout_buffer):
        translator.handle_line(request(14, "tools/call", {"arguments": {}}))

        [response] = responses(stdout_buffer)
        assert response["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_shutdown_answers_inflight_calls(self, translator, correlator, stdout_buffer):
        translator.handle_line(request(15, "tools/call", {"name": "get_console_logs"}))
        await settle()
        assert translator.inflight == 1

        await translator.cancel_inflight()

        [response] = responses(stdout_buffer)
        assert response["id"] == 15
        assert response["error"]["message"] == "Bridge shutting down"
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_run_reads_until_eof(self, translator, stdout_buffer):
        reader = asyncio.StreamReader()
        reader.feed_data(request(1, "tools/list").encode()[:10])
        reader.feed_data(request(1, "tools/list").encode()[10:] + b"\n")
        reader.feed_eof()

        await translator.run(reader)

        [response] = responses(stdout_buffer)
        assert response["id"] == 1

    @pytest.mark.asyncio
    async def test_unlisted_tool_still_forwarded(self, translator, correlator, fake_link, stdout_buffer, caplog):
        translator.handle_line(request(12, "tools/call", {"name": "get_dom_tree"}))
        await settle()

        frame = json.loads(fake_link.sent[0])
        assert frame["name"] == "get_dom_tree"
        assert any("unlisted tool 'get_dom_tree'" in r.getMessage() for r in caplog.records)

        correlator.on_peer_message(json.dumps({"id": frame["id"], "error": "Unknown tool: get_dom_tree"}))
        await translator.wait_idle()
        [response] = responses(stdout_buffer)
        assert response["id"] == 12
        assert response["error"]["message"] == "Unknown tool: get_dom_tree"
