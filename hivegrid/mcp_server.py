"""Agent-side MCP server.

Started by the agent CLI (via the per-agent tool config) as a stdio MCP
server. Each tool call becomes a request on the agent's websocket channel to
the hub; the hub either executes it (git, merge, kill) or routes it to the
observer that owns grid state.

stdout carries the MCP protocol, so everything is logged to stderr.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from typing import Any, Optional

import anyio
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import ValidationError

from hivegrid import __version__
from hivegrid.constants import (
    DEFAULT_HOST,
    DEFAULT_MAX_DISTANCE,
    DEFAULT_PORT,
    ENV_AGENT_ID,
    ENV_CELL_TYPE,
    ENV_CONTEXT,
    ENV_PARENT_ID,
    ENV_WS_URL,
    MCP_SERVER_NAME,
    WS_PATH,
)
from hivegrid.core.context import read_context_file
from hivegrid.core.status import TERMINAL_STATES
from hivegrid.logging_config import get_logger, setup_logging
from hivegrid.mcp.hub_client import HubClient, HubRequestError
from hivegrid.mcp.role_tools import filter_tools, is_tool_allowed
from hivegrid.mcp.tool_definitions import TOOL_REQUEST_KINDS, get_tool_definitions

logger = get_logger(__name__)

DEFAULT_WS_URL = f"ws://{DEFAULT_HOST}:{DEFAULT_PORT}{WS_PATH}"
AWAIT_POLL_INTERVAL_S = 2.0
DEFAULT_AWAIT_TIMEOUT_S = 300.0
DEFAULT_MESSAGES_WAIT_S = 60.0


def _is_client_disconnect_exception(exc: BaseException) -> bool:
    """True if the MCP client went away (stdin closed) rather than a real failure."""
    if isinstance(exc, (anyio.ClosedResourceError, anyio.BrokenResourceError, BrokenPipeError, EOFError)):
        return True
    if isinstance(exc, BaseExceptionGroup):
        return all(_is_client_disconnect_exception(e) for e in exc.exceptions)
    return False


def _json_text(payload: object) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, default=str, indent=2))]


def _optional(arguments: dict[str, Any], *keys: str) -> dict[str, Any]:
    """Copy only the keys the caller actually provided."""
    return {key: arguments[key] for key in keys if arguments.get(key) is not None}


class HivegridMCPServer:
    """MCP tools for one agent, backed by its hub channel."""

    def __init__(
        self,
        client: HubClient,
        cell_type: Optional[str] = None,
        context_path: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.cell_type = cell_type
        self.context_path = context_path
        self.parent_id = parent_id
        self.server: Server = Server(MCP_SERVER_NAME, version=__version__)
        self._setup_tools(self.server)

    @property
    def agent_id(self) -> str:
        return self.client.agent_id

    def list_tools(self) -> list[Tool]:
        return filter_tools(self.cell_type, get_tool_definitions())

    def _setup_tools(self, server: Server) -> None:
        @server.list_tools()  # type: ignore
        async def list_tools() -> list[Tool]:  # pyright: ignore[reportUnusedFunction]
            """List the tools this agent's role may use."""
            return self.list_tools()

        @server.call_tool()  # type: ignore
        async def call_tool(  # pyright: ignore[reportUnusedFunction]
            name: str, arguments: dict[str, object]
        ) -> list[TextContent]:
            return await self.call_tool(name, dict(arguments or {}))

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Run one tool call.

        Raises:
            ValueError: unknown tool, or not available to this agent's role
            HubRequestError: the hub did not answer
        """
        logger.debug("MCP tool call", tool=name, caller=self.agent_id)
        if not is_tool_allowed(self.cell_type, name):
            raise ValueError(f"Tool {name} is not available to {self.cell_type} agents")

        if name == "get_identity":
            return self.get_identity()
        if name == "get_messages":
            return _json_text(await self.get_messages(arguments))
        if name == "await_worker":
            return _json_text(await self.await_worker(arguments))
        if name == "spawn_agent":
            return [TextContent(type="text", text=await self.spawn_agent(arguments))]
        if name == "report_result":
            payload = {
                "parentId": arguments.get("parentId") or self.parent_id,
                "result": arguments.get("result"),
                "success": bool(arguments.get("success")),
                **_optional(arguments, "message"),
            }
            if not payload["parentId"]:
                raise ValueError("No parent to report to (not spawned as a worker)")
            return _json_text(await self.client.request("mcp.reportResult", payload))
        if name == "get_grid_state":
            payload = {"maxDistance": arguments.get("maxDistance") or DEFAULT_MAX_DISTANCE}
            return _json_text(await self.client.request("mcp.getGrid", payload))

        kind = TOOL_REQUEST_KINDS.get(name)
        if kind is None:
            raise ValueError(f"Unknown tool: {name}")
        return _json_text(await self.client.request(kind, arguments))

    async def spawn_agent(self, arguments: dict[str, Any]) -> str:
        payload = {
            "cellType": arguments.get("cellType"),
            **_optional(arguments, "q", "r", "task", "taskDetails", "instructions", "model"),
        }
        result = await self.client.request("mcp.spawn", payload)
        if not result.get("success"):
            return f"Failed to spawn agent: {result.get('error')}"
        hex_ = result.get("hex") or {}
        return f"Spawned {payload['cellType']} agent {result.get('agentId')} at hex ({hex_.get('q')}, {hex_.get('r')})"

    async def get_messages(self, arguments: dict[str, Any]) -> dict[str, Any]:
        payload = _optional(arguments, "since", "fromAgent")
        seen = self.client.inbox_generation
        result = await self.client.request("mcp.getMessages", payload)
        if not arguments.get("wait") or result.get("messages"):
            return result

        timeout_s = float(arguments.get("timeoutSeconds") or DEFAULT_MESSAGES_WAIT_S)
        if not await self.client.wait_for_inbox(seen, timeout_s):
            return {**result, "timedOut": True}
        return await self.client.request("mcp.getMessages", payload)

    async def await_worker(self, arguments: dict[str, Any]) -> dict[str, Any]:
        worker_id = str(arguments.get("workerId", ""))
        timeout_s = float(arguments.get("timeoutSeconds") or DEFAULT_AWAIT_TIMEOUT_S)
        deadline = time.monotonic() + timeout_s
        terminal = {state.value for state in TERMINAL_STATES}

        while True:
            result = await self.client.request("mcp.getWorkerStatus", {"workerId": worker_id})
            if not result.get("success") or result.get("status") in terminal:
                return result
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return {**result, "timedOut": True}
            await asyncio.sleep(min(AWAIT_POLL_INTERVAL_S, remaining))

    def get_identity(self) -> list[TextContent]:
        if not self.context_path:
            raise ValueError(f"{ENV_CONTEXT} is not set; no context available")
        try:
            context = read_context_file(self.context_path)
        except (OSError, ValidationError, ValueError) as e:
            raise ValueError(f"Cannot read context {self.context_path}: {e}") from e
        return [TextContent(type="text", text=context.to_json())]

    async def serve_stdio(self) -> None:
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(read_stream, write_stream, self.server.create_initialization_options())


async def main() -> int:
    agent_id = os.getenv(ENV_AGENT_ID)
    if not agent_id:
        logger.error("%s environment variable is required", ENV_AGENT_ID)
        return 1

    client = HubClient(agent_id, os.getenv(ENV_WS_URL, DEFAULT_WS_URL))
    try:
        await client.connect()
    except HubRequestError as e:
        logger.error("%s", e)
        return 1

    mcp_server = HivegridMCPServer(
        client,
        cell_type=os.getenv(ENV_CELL_TYPE),
        context_path=os.getenv(ENV_CONTEXT),
        parent_id=os.getenv(ENV_PARENT_ID),
    )
    logger.info("Server ready", agent=agent_id, cell_type=mcp_server.cell_type)
    serve_task = asyncio.create_task(mcp_server.serve_stdio())
    hub_closed = asyncio.create_task(client.closed.wait())
    try:
        done, _ = await asyncio.wait({serve_task, hub_closed}, return_when=asyncio.FIRST_COMPLETED)
        if hub_closed in done:
            # Without the hub no tool can work; exit so the agent CLI reports it
            logger.error("Hub connection closed, exiting")
            serve_task.cancel()
            return 1
        try:
            serve_task.result()
        except BaseException as e:
            if not _is_client_disconnect_exception(e):
                raise
            logger.info("MCP client disconnected")
        return 0
    finally:
        hub_closed.cancel()
        await client.close()


def run() -> None:
    setup_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
