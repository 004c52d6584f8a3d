#!/usr/bin/env python3
"""
Strapi MCP Server - Strapi 5 API access and plugin development tools for agents.

Speaks newline-delimited JSON-RPC over stdin/stdout. Tool failures are
returned as error-flagged tool results; only unknown methods, unknown tools
and malformed envelopes become JSON-RPC errors.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, BinaryIO, Callable, Optional

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    CallToolResult,
    ErrorData,
    Implementation,
    InitializeResult,
    ServerCapabilities,
    TextContent,
    ToolsCapability,
)

from strapi_client import StrapiClient
from strapi_config import StrapiConfig
from strapi_tools import REGISTRY, RegisteredTool, ToolContext

# stdout carries protocol lines only; logs go to stderr
logging.basicConfig(
    level=os.environ.get("STRAPI_MCP_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr,
)
logger = logging.getLogger("strapi-mcp-server")

__version__ = "1.5.0"

SERVER_NAME = "strapi-mcp-dev-edition"
PROTOCOL_VERSION = "2024-11-05"

# Largest request line accepted from stdin
MAX_LINE_BYTES = 16 * 1024 * 1024


class ProtocolError(Exception):
    """A failure interpreting the envelope itself, reported as a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    def to_error(self) -> dict:
        return ErrorData(code=self.code, message=self.message).model_dump(exclude_none=True)


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True)


def _tool_result(text: str, is_error: bool = False) -> dict:
    return _dump(CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error))


class Dispatcher:
    """Routes a method name to its handler.

    Handlers return the `result` payload (or None for notifications) and raise
    ProtocolError for envelope-level failures.
    """

    def __init__(self, registry: dict[str, RegisteredTool], context: ToolContext):
        self._registry = registry
        self._context = context
        self._methods: dict[str, Callable[[dict], Any]] = {
            "initialize": self._initialize,
            "notifications/initialized": self._acknowledge,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
        }

    async def dispatch(self, method: Any, params: Any) -> Optional[dict]:
        if not isinstance(method, str):
            raise ProtocolError(INVALID_REQUEST, "Invalid request: missing method")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ProtocolError(INVALID_PARAMS, "Invalid params: expected an object")

        handler = self._methods.get(method)
        if handler is None and method.startswith("notifications/"):
            handler = self._acknowledge
        if handler is None:
            raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")
        return await handler(params)

    async def _initialize(self, _params: dict) -> dict:
        return _dump(InitializeResult(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=SERVER_NAME, version=__version__),
        ))

    async def _acknowledge(self, _params: dict) -> None:
        return None

    async def _ping(self, _params: dict) -> dict:
        return {}

    async def _list_tools(self, _params: dict) -> dict:
        return {"tools": [_dump(tool.definition) for tool in self._registry.values()]}

    async def _call_tool(self, params: dict) -> dict:
        name = params.get("name")
        if not isinstance(name, str):
            raise ProtocolError(INVALID_PARAMS, "Invalid params: missing tool name")

        tool = self._registry.get(name)
        if tool is None:
            raise ProtocolError(METHOD_NOT_FOUND, f"Tool not found: {name}")

        arguments = params.get("arguments") or {}
        try:
            result = await tool.handler(self._context, arguments)
            text = json.dumps(result, indent=2)
        except Exception as e:
            logger.warning(f"Tool {name} failed: {e}")
            return _tool_result(f"Error: {e}", is_error=True)
        return _tool_result(text)


class StdioTransport:
    """Reads request lines, dispatches each in its own task, writes response lines.

    Responses are written as invocations complete, so their order may differ
    from request order. Requests without an id never produce output.
    """

    def __init__(self, dispatcher: Dispatcher, reader: asyncio.StreamReader, output: BinaryIO):
        self._dispatcher = dispatcher
        self._reader = reader
        self._output = output
        self._pending: set[asyncio.Task] = set()

    async def serve(self) -> None:
        """Serve until end of stream, then wait for in-flight requests."""
        while True:
            try:
                line = await self._reader.readline()
            except ValueError as e:
                logger.warning(f"Discarding oversized request line: {e}")
                continue
            if not line:
                break
            if not line.strip():
                continue

            try:
                envelope = json.loads(line.decode("utf-8"))
            except ValueError as e:
                logger.warning(f"Failed to parse request: {e}")
                continue
            if not isinstance(envelope, dict):
                logger.warning(f"Discarding request that is not a JSON object: {type(envelope).__name__}")
                continue

            task = asyncio.create_task(self._handle(envelope))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        if self._pending:
            await asyncio.gather(*self._pending)

    async def _handle(self, envelope: dict) -> None:
        # Only a missing id member makes a notification; "id": null is still answered.
        has_id = "id" in envelope
        request_id = envelope.get("id")
        try:
            result = await self._dispatcher.dispatch(envelope.get("method"), envelope.get("params"))
        except ProtocolError as e:
            response = {"jsonrpc": "2.0", "id": request_id, "error": e.to_error()}
        except Exception as e:
            logger.exception(f"Unexpected failure handling {envelope.get('method')!r}")
            error = ProtocolError(INTERNAL_ERROR, f"Internal error: {e}")
            response = {"jsonrpc": "2.0", "id": request_id, "error": error.to_error()}
        else:
            response = {"jsonrpc": "2.0", "id": request_id, "result": result if result is not None else {}}

        if has_id:
            self._write(response)

    def _write(self, response: dict) -> None:
        self._output.write((json.dumps(response) + "\n").encode("utf-8"))
        self._output.flush()


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def main():
    """Run the MCP server."""
    config = StrapiConfig.from_env()
    context = ToolContext(config=config, client=StrapiClient(config))
    dispatcher = Dispatcher(REGISTRY, context)

    logger.info(f"Strapi MCP server started (backend {config.base_url}, project root {config.project_root})")
    transport = StdioTransport(dispatcher, await _stdin_reader(), sys.stdout.buffer)
    await transport.serve()
    logger.info("Strapi MCP server stopped: stdin closed")


def run():
    """Sync entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
