"""Tests for the Strapi MCP server dispatcher and stdio transport."""

import asyncio
import io
import json
import logging
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, Tool

from strapi_client import StrapiAPIError, StrapiClient
from strapi_config import StrapiConfig
from strapi_mcp_server import PROTOCOL_VERSION, SERVER_NAME, Dispatcher, ProtocolError, StdioTransport
from strapi_tools import REGISTRY, ToolContext, build_registry


def _context(root: Path = Path(".")) -> ToolContext:
    config = StrapiConfig(base_url="http://cms.test", project_root=root)
    return ToolContext(config=config, client=AsyncMock(spec=StrapiClient))


def _registry(**handlers):
    definitions = [Tool(name=name, description=name, inputSchema={"type": "object"}) for name in handlers]
    return build_registry(definitions, handlers)


def _request(method: str, params=None, request_id=None) -> str:
    envelope = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        envelope["params"] = params
    if request_id is not None:
        envelope["id"] = request_id
    return json.dumps(envelope)


async def _serve(dispatcher: Dispatcher, *lines: str) -> list[dict]:
    """Feed lines through a transport and return the decoded response lines."""
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line.encode("utf-8") + b"\n")
    reader.feed_eof()

    output = io.BytesIO()
    await StdioTransport(dispatcher, reader, output).serve()
    return [json.loads(line) for line in output.getvalue().decode("utf-8").splitlines()]


def _by_id(responses: list[dict]) -> dict:
    return {r["id"]: r for r in responses}


class TestDispatcher:
    """Tests for method routing."""

    @pytest.mark.asyncio
    async def test_initialize(self):
        result = await Dispatcher(REGISTRY, _context()).dispatch("initialize", {})
        assert result["protocolVersion"] == PROTOCOL_VERSION
        assert result["capabilities"]["tools"] == {"listChanged": False}
        assert result["serverInfo"]["name"] == SERVER_NAME

    @pytest.mark.asyncio
    async def test_initialized_notification_is_noop(self):
        assert await Dispatcher(REGISTRY, _context()).dispatch("notifications/initialized", None) is None

    @pytest.mark.asyncio
    async def test_other_notifications_are_noop(self):
        assert await Dispatcher(REGISTRY, _context()).dispatch("notifications/cancelled", {}) is None

    @pytest.mark.asyncio
    async def test_ping(self):
        assert await Dispatcher(REGISTRY, _context()).dispatch("ping", None) == {}

    @pytest.mark.asyncio
    async def test_tools_list_in_registry_order(self):
        result = await Dispatcher(REGISTRY, _context()).dispatch("tools/list", {})
        names = [t["name"] for t in result["tools"]]
        assert names == list(REGISTRY)
        assert len(names) == 16
        for tool in result["tools"]:
            assert set(tool) >= {"name", "description", "inputSchema"}

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        with pytest.raises(ProtocolError) as excinfo:
            await Dispatcher(REGISTRY, _context()).dispatch("resources/list", {})
        assert excinfo.value.code == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_tool_is_protocol_error(self):
        with pytest.raises(ProtocolError) as excinfo:
            await Dispatcher(REGISTRY, _context()).dispatch("tools/call", {"name": "strapi_nope", "arguments": {}})
        assert excinfo.value.code == METHOD_NOT_FOUND
        assert "strapi_nope" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_missing_tool_name(self):
        with pytest.raises(ProtocolError) as excinfo:
            await Dispatcher(REGISTRY, _context()).dispatch("tools/call", {})
        assert excinfo.value.code == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_tool_success_wrapped_as_json_text(self, tmp_path):
        (tmp_path / "src" / "api" / "article").mkdir(parents=True)
        result = await Dispatcher(REGISTRY, _context(tmp_path)).dispatch(
            "tools/call", {"name": "strapi_list_apis", "arguments": {}}
        )
        assert result.get("isError") is not True
        assert result["content"][0]["type"] == "text"
        assert json.loads(result["content"][0]["text"]) == {"apis": ["article"]}

    @pytest.mark.asyncio
    async def test_tool_failure_flagged_not_raised(self):
        ctx = _context()
        ctx.client.request.side_effect = StrapiAPIError(401, {"error": "Unauthorized"})

        result = await Dispatcher(REGISTRY, ctx).dispatch(
            "tools/call", {"name": "strapi_whoami", "arguments": {}}
        )

        assert result["isError"] is True
        assert result["content"][0]["text"].startswith("Error: Strapi API Error (401)")

    @pytest.mark.asyncio
    async def test_missing_arguments_default_to_empty(self):
        handler = AsyncMock(return_value={"ok": True})
        dispatcher = Dispatcher(_registry(echo=handler), _context())

        await dispatcher.dispatch("tools/call", {"name": "echo"})
        assert handler.await_args.args[1] == {}


class TestStdioTransport:
    """Tests for line framing and response envelopes."""

    @pytest.mark.asyncio
    async def test_handshake_sequence(self):
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            _request("initialize", {}, request_id=1),
            _request("notifications/initialized"),
            _request("tools/list", request_id=2),
        )

        assert [r["id"] for r in responses] == [1, 2]
        assert all(r["jsonrpc"] == "2.0" for r in responses)
        assert responses[0]["result"]["protocolVersion"] == PROTOCOL_VERSION
        assert len(responses[1]["result"]["tools"]) == 16

    @pytest.mark.asyncio
    async def test_malformed_line_produces_no_output_and_one_log(self, caplog):
        caplog.set_level(logging.WARNING, logger="strapi-mcp-server")

        responses = await _serve(Dispatcher(REGISTRY, _context()), '{"method": "tools/list", "id": ')

        assert responses == []
        warnings = [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert len(warnings) == 1
        assert "Failed to parse request" in warnings[0].getMessage()

    @pytest.mark.asyncio
    async def test_bad_line_does_not_stop_loop(self):
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            "not json",
            "",
            "   ",
            "[1, 2, 3]",
            _request("ping", request_id="after"),
        )
        assert responses == [{"jsonrpc": "2.0", "id": "after", "result": {}}]

    @pytest.mark.asyncio
    async def test_notification_without_id_writes_nothing(self):
        handler = AsyncMock(return_value={"ok": True})
        responses = await _serve(
            Dispatcher(_registry(echo=handler), _context()),
            _request("tools/call", {"name": "echo", "arguments": {}}),
            _request("no/such/method"),
        )
        assert responses == []
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_method_error_envelope(self):
        responses = await _serve(Dispatcher(REGISTRY, _context()), _request("resources/list", request_id=5))

        assert responses == [{
            "jsonrpc": "2.0",
            "id": 5,
            "error": {"code": METHOD_NOT_FOUND, "message": "Method not found: resources/list"},
        }]

    @pytest.mark.asyncio
    async def test_unknown_tool_error_envelope(self):
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            _request("tools/call", {"name": "strapi_nope", "arguments": {}}, request_id=3),
        )

        assert "result" not in responses[0]
        assert responses[0]["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_tool_error_is_success_envelope(self):
        async def broken(ctx, arguments):
            raise RuntimeError("disk on fire")

        responses = await _serve(
            Dispatcher(_registry(broken=broken), _context()),
            _request("tools/call", {"name": "broken", "arguments": {}}, request_id=4),
        )

        assert "error" not in responses[0]
        result = responses[0]["result"]
        assert result["isError"] is True
        assert result["content"] == [{"type": "text", "text": "Error: disk on fire"}]

    @pytest.mark.asyncio
    async def test_missing_method_is_invalid_request(self):
        responses = await _serve(Dispatcher(REGISTRY, _context()), json.dumps({"id": 9}))
        assert responses[0]["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_non_object_params_rejected(self):
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            json.dumps({"id": 10, "method": "tools/call", "params": [1]}),
        )
        assert responses[0]["error"]["code"] == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_unexpected_dispatch_failure_is_internal_error(self):
        dispatcher = Dispatcher(REGISTRY, _context())
        dispatcher.dispatch = AsyncMock(side_effect=KeyError("boom"))

        responses = await _serve(dispatcher, _request("tools/list", request_id=11))
        assert responses[0]["error"]["code"] == INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_null_id_still_answered(self):
        """Only a missing id member makes a notification; a null id gets a response."""
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            json.dumps({"jsonrpc": "2.0", "method": "ping", "id": None}),
        )
        assert responses == [{"jsonrpc": "2.0", "id": None, "result": {}}]

    @pytest.mark.asyncio
    async def test_null_id_error_still_answered(self):
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            json.dumps({"jsonrpc": "2.0", "method": "resources/list", "id": None}),
        )
        assert len(responses) == 1
        assert responses[0]["id"] is None
        assert responses[0]["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unserializable_result_is_tool_error(self):
        async def opaque(ctx, arguments):
            return {"handle": object()}

        responses = await _serve(
            Dispatcher(_registry(opaque=opaque), _context()),
            _request("tools/call", {"name": "opaque", "arguments": {}}, request_id=14),
        )

        assert "error" not in responses[0]
        result = responses[0]["result"]
        assert result["isError"] is True
        assert result["content"][0]["text"].startswith("Error: ")

    @pytest.mark.asyncio
    async def test_notification_with_id_gets_empty_result(self):
        responses = await _serve(
            Dispatcher(REGISTRY, _context()),
            _request("notifications/initialized", request_id=12),
        )
        assert responses == [{"jsonrpc": "2.0", "id": 12, "result": {}}]

    @pytest.mark.asyncio
    async def test_unicode_round_trip(self):
        async def echo(ctx, arguments):
            return arguments

        responses = await _serve(
            Dispatcher(_registry(echo=echo), _context()),
            _request("tools/call", {"name": "echo", "arguments": {"title": "Café ☕"}}, request_id=13),
        )
        assert json.loads(responses[0]["result"]["content"][0]["text"]) == {"title": "Café ☕"}

    @pytest.mark.asyncio
    async def test_concurrent_invocations_correlated_by_id(self):
        release = asyncio.Event()

        async def slow(ctx, arguments):
            await asyncio.wait_for(release.wait(), timeout=5)
            return {"who": "slow"}

        async def fast(ctx, arguments):
            release.set()
            return {"who": "fast"}

        responses = await _serve(
            Dispatcher(_registry(slow=slow, fast=fast), _context()),
            _request("tools/call", {"name": "slow", "arguments": {}}, request_id=1),
            _request("tools/call", {"name": "fast", "arguments": {}}, request_id=2),
        )

        assert len(responses) == 2
        by_id = _by_id(responses)
        assert json.loads(by_id[1]["result"]["content"][0]["text"]) == {"who": "slow"}
        assert json.loads(by_id[2]["result"]["content"][0]["text"]) == {"who": "fast"}
