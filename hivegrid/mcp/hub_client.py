"""Websocket client the agent-side tool process uses to talk to the hub."""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from typing import Any, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from hivegrid.constants import MCP_CONNECT_TIMEOUT_S, MCP_REQUEST_TIMEOUT_S
from hivegrid.logging_config import get_logger
from hivegrid.protocol import REGISTER_KIND, make_message

logger = get_logger(__name__)

INBOX_NOTIFICATION = "mcp.inbox.notification"


class HubRequestError(RuntimeError):
    """A request could not be delivered or was not answered in time."""


class HubClient:
    """One registered tool-call channel.

    Requests are correlated by id; each gets its own future, so concurrent
    tool calls may complete in any order.
    """

    def __init__(
        self,
        agent_id: str,
        ws_url: str,
        request_timeout_s: float = MCP_REQUEST_TIMEOUT_S,
    ) -> None:
        self.agent_id = agent_id
        self.ws_url = ws_url
        self.request_timeout_s = request_timeout_s
        self.inbox_count = 0
        self.latest_inbox_timestamp: Optional[str] = None
        # Bumped on every inbox notification
        self.inbox_generation = 0

        self._ws: ClientConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._counter = itertools.count(1)
        self._inbox_event = asyncio.Event()
        self.closed = asyncio.Event()

    def next_request_id(self) -> str:
        return f"mcp-{self.agent_id}-{next(self._counter)}-{int(time.time() * 1000)}"

    async def connect(self) -> None:
        """Connect and register.

        Raises:
            HubRequestError: the hub is unreachable within the connect timeout
        """
        try:
            self._ws = await asyncio.wait_for(connect(self.ws_url), timeout=MCP_CONNECT_TIMEOUT_S)
        except (TimeoutError, OSError, WebSocketException) as e:
            raise HubRequestError(f"Cannot connect to hub at {self.ws_url}: {e}") from e
        await self._ws.send(json.dumps(make_message(REGISTER_KIND, {"agentId": self.agent_id})))
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to %s as agent %s", self.ws_url, self.agent_id)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await self._reader_task

    async def request(
        self,
        kind: str,
        payload: Optional[dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> dict[str, Any]:
        """Send `kind` and wait for the matching `<kind>.result` payload."""
        if self._ws is None or self.closed.is_set():
            raise HubRequestError("Not connected to hub")

        request_id = self.next_request_id()
        body = {**(payload or {}), "callerId": self.agent_id}
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps(make_message(kind, body, request_id)))
            return await asyncio.wait_for(future, timeout=timeout_s or self.request_timeout_s)
        except TimeoutError as e:
            raise HubRequestError(f"Request timeout: {request_id}") from e
        except ConnectionClosed as e:
            raise HubRequestError(f"Hub connection closed during {kind}") from e
        finally:
            self._pending.pop(request_id, None)

    async def wait_for_inbox(self, seen: int, timeout_s: float) -> bool:
        """Wait until an inbox notification newer than `seen` arrives. False on timeout."""
        deadline = time.monotonic() + timeout_s
        while self.inbox_generation <= seen:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._inbox_event.clear()
            try:
                await asyncio.wait_for(self._inbox_event.wait(), timeout=remaining)
            except TimeoutError:
                return self.inbox_generation > seen
        return True

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError as e:
                    logger.error("Failed to parse message: %s", e)
                    continue
                if isinstance(message, dict):
                    self.handle_message(message)
        except ConnectionClosed:
            pass
        finally:
            logger.info("Hub connection closed")
            self.closed.set()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(HubRequestError("Hub connection closed"))

    def handle_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}

        if kind == INBOX_NOTIFICATION:
            self.inbox_count = int(payload.get("messageCount") or 0)
            self.latest_inbox_timestamp = payload.get("latestTimestamp")
            self.inbox_generation += 1
            self._inbox_event.set()
            logger.debug("Inbox updated", count=self.inbox_count)
            return

        request_id = message.get("requestId")
        if not request_id:
            logger.debug("Ignoring notification %s", kind)
            return
        future = self._pending.get(request_id)
        if future is None:
            logger.warning("No pending request for: %s", request_id)
            return
        if not future.done():
            future.set_result(payload)
