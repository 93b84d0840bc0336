"""Session & protocol hub.

One websocket endpoint serves two kinds of peers:

- observers (the grid UI): create and drive terminal sessions, hold the
  authoritative agent/grid state and answer forwarded tool calls
- tool-call channels (one `hivegrid-mcp` process per agent): identify with
  `mcp.register`, then send `mcp.<kind>` requests

The hub owns the PTY sessions, workspace/context lifecycle and the pending
request table. It never duplicates grid state: tool calls about the grid are
forwarded verbatim to observers and their answers routed back to exactly the
channel that asked.
"""

from __future__ import annotations

import asyncio
import json
import os
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, assert_never, cast

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from hivegrid import __version__
from hivegrid.config import TOOL_DIR, AgentsConfig, config
from hivegrid.constants import ACTIVITY_RECENT_COMMITS, MCP_REQUEST_TIMEOUT_S, WS_PATH
from hivegrid.core.agent_launcher import build_agent_launch
from hivegrid.core.context import TaskAssignment, build_context, cleanup_context_file, write_context_file
from hivegrid.core.git import count_commits_async, get_git_root, recent_commits_async
from hivegrid.core.models import DetailedStatus, StoredAgentMetadata
from hivegrid.core.pending_requests import PendingRequestTable
from hivegrid.core.session_manager import TerminalSessionManager
from hivegrid.core.status import StatusChange, StatusTracker
from hivegrid.core.tool_config import cleanup_tool_config
from hivegrid.core.tool_handlers import (
    check_kill_permission,
    handle_check_merge_conflicts,
    handle_cleanup_worker_worktree,
    handle_get_worker_diff,
    handle_list_worker_commits,
    handle_list_worker_files,
    handle_merge_staging_to_main,
    handle_merge_worker_to_staging,
)
from hivegrid.core.worktree import create_workspace, remove_workspace
from hivegrid.logging_config import get_logger
from hivegrid.protocol import (
    FORWARDED_TOOL_KINDS,
    HubToolKind,
    InboxUpdatedPayload,
    ObserverRequestKind,
    ProjectValidatePayload,
    RegisterPayload,
    ReportStatusPayload,
    SessionIdPayload,
    TerminalCreatePayload,
    TerminalResizePayload,
    TerminalWritePayload,
    ToolPayload,
    WorkerForcePayload,
    WorkerPayload,
    classify,
    is_mcp_message,
    make_message,
    result_kind,
)

logger = get_logger(__name__)

WS_SEND_TIMEOUT_S = 2.0
WS_PING_INTERVAL_S = 20.0
WS_PING_TIMEOUT_S = 20.0
SERVER_STARTUP_TIMEOUT_S = 5.0
SERVER_SHUTDOWN_TIMEOUT_S = 5.0


class ToolCallError(Exception):
    """A hub-executed tool call cannot run; reported back to the caller."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class _Outbox:
    """Serialized sender for one websocket.

    Every message to a peer goes through its queue, so terminal output and
    replies reach it in the order they were produced.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._queue: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    def put(self, message: dict[str, Any]) -> None:
        self._queue.put_nowait(message)

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            try:
                await asyncio.wait_for(self.websocket.send_json(message), timeout=WS_SEND_TIMEOUT_S)
            except TimeoutError:
                logger.warning("WebSocket send timeout, dropping peer")
                return
            except (OSError, ConnectionError, WebSocketDisconnect, RuntimeError) as exc:
                logger.info("WebSocket connection lost: %s", exc)
                return

    async def close(self) -> None:
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._task, timeout=1.0)
        except (TimeoutError, asyncio.CancelledError):
            self._task.cancel()


@dataclass
class _AgentActivity:
    created_at: int
    last_activity_at: int = 0


class HubServer:
    """Websocket hub for terminal sessions and tool-call routing."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        default_project_dir: Optional[str] = None,
        tool_dir: Optional[str | Path] = None,
        agents: Optional[AgentsConfig] = None,
        sessions: Optional[TerminalSessionManager] = None,
        activity_interval_s: Optional[float] = None,
        runtime_dir: Optional[str | Path] = None,
        main_branch: Optional[str] = None,
    ) -> None:
        self.host = host or config.server.host
        self.port = port if port is not None else config.server.port
        self.default_project_dir = default_project_dir or config.server.default_project_dir
        self.tool_dir = str(tool_dir or TOOL_DIR)
        self.agents = agents or config.agents
        self.activity_interval_s = activity_interval_s or config.session.activity_interval_s
        # Context and tool-config files; None means the system temp dir
        self.runtime_dir = runtime_dir
        self.main_branch = main_branch or config.git.main_branch

        self.sessions = sessions or TerminalSessionManager(config.session.output_buffer_max_chunks)
        self.session_metadata: dict[str, StoredAgentMetadata] = {}
        self.observers: set[WebSocket] = set()
        self.tool_channels: dict[str, WebSocket] = {}
        self.pending: PendingRequestTable[WebSocket] = PendingRequestTable()
        self.status = StatusTracker()

        self._channel_agents: dict[WebSocket, str] = {}
        self._outboxes: dict[WebSocket, _Outbox] = {}
        self._activity: dict[str, _AgentActivity] = {}

        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None
        self._activity_task: asyncio.Task[None] | None = None
        self._running = False

        self.app = FastAPI(title="hivegrid hub", version=__version__)
        self._setup_routes()

    @property
    def ws_url(self) -> str:
        host = "127.0.0.1" if self.host in ("0.0.0.0", "") else self.host
        return f"ws://{host}:{self.port}{WS_PATH}"

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        async def health() -> dict[str, object]:  # pyright: ignore
            return {
                "status": "ok",
                "sessions": len(self.sessions),
                "observers": len(self.observers),
                "agents": sorted(self.tool_channels),
            }

        @self.app.websocket(WS_PATH)
        async def websocket_endpoint(websocket: WebSocket) -> None:  # pyright: ignore
            await self._handle_websocket(websocket)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._outboxes[websocket] = _Outbox(websocket)
        # Every peer starts as an observer until it registers as a tool-call channel
        self.observers.add(websocket)
        logger.info("Client connected")
        self._send(
            websocket,
            make_message("server.info", {"toolDir": self.tool_dir, "defaultProjectDir": self.default_project_dir}),
        )

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data: object = json.loads(raw)
                except ValueError as e:
                    self._send_error(websocket, f"Failed to parse message: {e}")
                    continue
                if not isinstance(data, dict):
                    self._send_error(websocket, "Invalid message format")
                    continue
                await self._dispatch(websocket, data)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("WebSocket error: %s", e, exc_info=True)
        finally:
            await self._on_disconnect(websocket)

    async def _on_disconnect(self, websocket: WebSocket) -> None:
        self.observers.discard(websocket)
        agent_id = self._channel_agents.pop(websocket, None)
        if agent_id is not None and self.tool_channels.get(agent_id) is websocket:
            del self.tool_channels[agent_id]
            logger.info("Agent %s tool channel disconnected", agent_id)
        self.pending.drop_connection(websocket)
        outbox = self._outboxes.pop(websocket, None)
        if outbox is not None:
            await outbox.close()
        # Sessions survive: a reconnecting observer re-attaches via sessions.list
        if self.sessions.session_ids() and agent_id is None:
            logger.info("Observer detached; %d session(s) keep running", len(self.sessions))
        logger.info("Client disconnected")

    def _send(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        outbox = self._outboxes.get(websocket)
        if outbox is None:
            logger.debug("Dropping %s for closed peer", message.get("type"))
            return
        outbox.put(message)

    def _send_error(
        self,
        websocket: WebSocket,
        message: str,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {"message": message}
        if session_id is not None:
            payload["sessionId"] = session_id
        self._send(websocket, make_message("terminal.error", payload, request_id))

    def _broadcast(self, message: dict[str, Any]) -> None:
        for websocket in list(self.observers):
            self._send(websocket, message)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, websocket: WebSocket, data: dict[str, Any]) -> None:
        kind = data.get("type")
        if not isinstance(kind, str):
            self._send_error(websocket, "Invalid message format")
            return
        request_id = data.get("requestId") if isinstance(data.get("requestId"), str) else None
        payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}

        message_class = classify(kind)
        try:
            match message_class:
                case "observer":
                    await self._handle_observer_request(
                        websocket, cast(ObserverRequestKind, kind), request_id, payload
                    )
                case "register":
                    self._register_tool_channel(websocket, RegisterPayload.model_validate(payload).agent_id)
                case "tool":
                    await self._handle_tool_call(websocket, kind, request_id, data)
                case "response":
                    self._route_response(kind, request_id, data)
                case "notification":
                    self._handle_notification(kind, payload)
                case "unknown":
                    if is_mcp_message(data):
                        logger.warning("Dropping unknown tool-channel message %s", kind)
                    else:
                        self._send_error(websocket, f"Unknown message type: {kind}", request_id)
                case _:
                    assert_never(message_class)
        except ValidationError as e:
            logger.warning("Invalid %s payload: %s", kind, e)
            if message_class == "observer":
                self._send_error(websocket, f"Invalid {kind} payload: {e}", request_id)
            elif message_class == "tool" and request_id:
                self._send(websocket, make_message(result_kind(kind), {"success": False, "error": str(e)}, request_id))

    async def _handle_observer_request(
        self,
        websocket: WebSocket,
        kind: ObserverRequestKind,
        request_id: Optional[str],
        payload: dict[str, Any],
    ) -> None:
        match kind:
            case "terminal.create":
                await self._create_terminal(websocket, request_id, TerminalCreatePayload.model_validate(payload))
            case "terminal.write":
                self._write_terminal(websocket, request_id, TerminalWritePayload.model_validate(payload))
            case "terminal.resize":
                self._resize_terminal(websocket, request_id, TerminalResizePayload.model_validate(payload))
            case "terminal.dispose":
                self._dispose_terminal(websocket, request_id, SessionIdPayload.model_validate(payload).session_id)
            case "sessions.list":
                self._send(websocket, make_message("sessions.list.result", self.list_sessions(), request_id))
            case "sessions.clear":
                cleared = self.clear_sessions()
                self._send(websocket, make_message("sessions.clear.result", {"cleared": cleared}, request_id))
            case "project.validate":
                result = self.validate_project(ProjectValidatePayload.model_validate(payload).path)
                self._send(websocket, make_message("project.validate.result", result, request_id))
            case _:
                assert_never(kind)

    # ------------------------------------------------------------------
    # Terminal sessions
    # ------------------------------------------------------------------

    async def _create_terminal(
        self,
        websocket: WebSocket,
        request_id: Optional[str],
        p: TerminalCreatePayload,
    ) -> None:
        snapshot = p.agent_snapshot
        working_dir = p.cwd or p.project_dir or self.default_project_dir
        command = p.shell or os.environ.get("SHELL", "bash")
        args: list[str] = []
        env = dict(p.env)
        metadata: Optional[StoredAgentMetadata] = None

        if snapshot is not None and snapshot.is_agent:
            agent_id = snapshot.agent_id
            project_dir = p.project_dir or p.cwd or self.default_project_dir
            workspace = create_workspace(
                project_dir,
                agent_id,
                snapshot.cell_type,
                ws_url=self.ws_url,
                tool_dir=self.tool_dir,
                config_dir=self.runtime_dir,
            )
            if not workspace.success or not workspace.workspace_path:
                self._send_error(websocket, workspace.error or f"Failed to create workspace for {agent_id}", request_id)
                return
            working_dir = workspace.workspace_path
            logger.info("Agent %s (%s) using %s", agent_id, snapshot.cell_type, working_dir)
            metadata = StoredAgentMetadata(
                **snapshot.model_dump(),
                parent_id=p.parent_id,
                parent_hex=p.parent_hex,
                task=p.task,
                task_details=p.task_details,
                initial_prompt=p.initial_prompt,
                instructions=p.instructions,
                project_dir=project_dir,
                workspace_path=working_dir,
                branch_name=workspace.branch_name,
                created_at=_now_ms(),
            )

            task_assignment = (
                TaskAssignment(
                    task=p.task,
                    task_details=p.task_details,
                    assigned_by=p.parent_id,
                    parent_hex=p.parent_hex,
                )
                if p.task and p.parent_id
                else None
            )
            context = build_context(
                snapshot,
                p.all_agents or [],
                max_distance=self.agents.max_distance,
                task_assignment=task_assignment,
                max_children=self.agents.max_children,
            )
            try:
                context_path = write_context_file(agent_id, context, self.runtime_dir)
            except OSError as e:
                logger.error("Failed to write context for %s: %s", agent_id, e)
                self._teardown_agent(metadata)
                self._send_error(websocket, f"Failed to write context for {agent_id}: {e}", request_id)
                return

            launch = build_agent_launch(
                agent_id,
                snapshot.cell_type,
                working_dir,
                context_path=context_path,
                tool_config_path=workspace.tool_config_path,
                parent_id=p.parent_id,
                model=p.model,
                initial_prompt=p.initial_prompt,
                instructions=p.instructions,
                task=p.task,
                task_details=p.task_details,
                base_env=env,
                agents=self.agents,
            )
            command = p.shell or launch.command
            args = launch.args
            env = launch.env

        try:
            session_id, session = await self.sessions.create(
                command, args, cwd=working_dir, env=env, cols=p.cols, rows=p.rows
            )
        except OSError as e:
            logger.error("Failed to start %s in %s: %s", command, working_dir, e)
            if metadata is not None:
                self._teardown_agent(metadata)
            self._send_error(websocket, f"Failed to start {command}: {e}", request_id)
            return

        if metadata is not None:
            self.session_metadata[session_id] = metadata
            self.status.register(metadata.agent_id)
            self._activity[metadata.agent_id] = _AgentActivity(created_at=metadata.created_at or _now_ms())

        session.on_data(lambda data: self._on_session_data(session_id, data))
        session.on_exit(lambda exit_code: self._on_session_exit(session_id, exit_code))

        self._send(
            websocket,
            make_message(
                "terminal.created",
                {"sessionId": session_id, "cols": session.cols, "rows": session.rows},
                request_id,
            ),
        )

    def _write_terminal(self, websocket: WebSocket, request_id: Optional[str], p: TerminalWritePayload) -> None:
        session = self.sessions.get(p.session_id)
        if session is None:
            self._send_error(websocket, f"Session not found: {p.session_id}", request_id, p.session_id)
            return
        try:
            session.write(p.data)
        except (OSError, RuntimeError) as e:
            self._send_error(websocket, str(e), request_id, p.session_id)

    def _resize_terminal(self, websocket: WebSocket, request_id: Optional[str], p: TerminalResizePayload) -> None:
        session = self.sessions.get(p.session_id)
        if session is None:
            self._send_error(websocket, f"Session not found: {p.session_id}", request_id, p.session_id)
            return
        try:
            session.resize(p.cols, p.rows)
            logger.debug("[%s] resized to %dx%d", p.session_id, p.cols, p.rows)
        except (OSError, RuntimeError) as e:
            self._send_error(websocket, str(e), request_id, p.session_id)

    def _dispose_terminal(self, websocket: WebSocket, request_id: Optional[str], session_id: str) -> None:
        if not self.sessions.dispose(session_id):
            self._send_error(websocket, f"Session not found: {session_id}", request_id, session_id)
            return
        metadata = self.session_metadata.pop(session_id, None)
        if metadata is not None:
            self._teardown_agent(metadata)
        self._send(websocket, make_message("terminal.disposed", {"sessionId": session_id}, request_id))
        logger.info("[%s] disposed", session_id)

    def _on_session_data(self, session_id: str, data: str) -> None:
        self._broadcast(make_message("terminal.data", {"sessionId": session_id, "data": data}))
        metadata = self.session_metadata.get(session_id)
        if metadata is None:
            return
        activity = self._activity.get(metadata.agent_id)
        if activity is not None:
            activity.last_activity_at = _now_ms()
        self._publish_status(self.status.infer(metadata.agent_id, DetailedStatus.WORKING))

    def _on_session_exit(self, session_id: str, exit_code: int) -> None:
        self._broadcast(make_message("terminal.exit", {"sessionId": session_id, "exitCode": exit_code}))
        self.sessions.remove(session_id)
        metadata = self.session_metadata.pop(session_id, None)
        if metadata is not None:
            self._teardown_agent(metadata)
        logger.info("[%s] exited with %s", session_id, exit_code)

    def _teardown_agent(self, metadata: StoredAgentMetadata, force: bool = False) -> None:
        """Delete the agent's context and tool config, then its workspace (best-effort)."""
        agent_id = metadata.agent_id
        cleanup_context_file(agent_id, self.runtime_dir)
        cleanup_tool_config(agent_id, self.runtime_dir)
        if metadata.project_dir:
            result = remove_workspace(metadata.project_dir, agent_id, force=force, main_branch=self.main_branch)
            if result.kept:
                logger.info("%s", result.message)
        self.status.forget(agent_id)
        self._activity.pop(agent_id, None)

    def list_sessions(self) -> dict[str, Any]:
        sessions = []
        for session_id in self.sessions.session_ids():
            session = self.sessions.get(session_id)
            if session is None:
                continue
            metadata = self.session_metadata.get(session_id)
            sessions.append(
                {
                    "sessionId": session_id,
                    "agent": metadata.to_wire() if metadata else None,
                    "buffer": session.get_buffer(),
                    "cols": session.cols,
                    "rows": session.rows,
                    "exited": not session.is_active(),
                }
            )
        logger.info("Listed %d session(s)", len(sessions))
        return {"sessions": sessions}

    def clear_sessions(self) -> int:
        """Dispose every session and tear down every agent workspace."""
        count = len(self.sessions)
        for metadata in list(self.session_metadata.values()):
            self._teardown_agent(metadata)
        self.session_metadata.clear()
        self.sessions.dispose_all()
        logger.info("Cleared %d session(s)", count)
        return count

    def validate_project(self, path: str) -> dict[str, Any]:
        resolved = Path(path).expanduser().resolve()
        exists = resolved.is_dir()
        return {
            "path": path,
            "resolvedPath": str(resolved),
            "exists": exists,
            "isGitRepo": exists and get_git_root(resolved) is not None,
        }

    # ------------------------------------------------------------------
    # Tool-call routing
    # ------------------------------------------------------------------

    def _register_tool_channel(self, websocket: WebSocket, agent_id: str) -> None:
        self.observers.discard(websocket)
        previous = self.tool_channels.get(agent_id)
        if previous is not None and previous is not websocket:
            logger.warning("Agent %s re-registered; replacing previous channel", agent_id)
            self._channel_agents.pop(previous, None)
        self.tool_channels[agent_id] = websocket
        self._channel_agents[websocket] = agent_id
        logger.info("Agent %s registered", agent_id)

    async def _handle_tool_call(
        self,
        websocket: WebSocket,
        kind: str,
        request_id: Optional[str],
        data: dict[str, Any],
    ) -> None:
        if request_id is None:
            logger.warning("Dropping %s without requestId", kind)
            return
        payload = dict(data.get("payload") or {})
        # The registered identity wins over whatever the channel claims
        registered = self._channel_agents.get(websocket)
        if registered is not None:
            payload["callerId"] = registered
        caller_id = ToolPayload.model_validate(payload).caller_id

        if kind in FORWARDED_TOOL_KINDS:
            if kind == "mcp.reportStatus":
                self._apply_reported_status(ReportStatusPayload.model_validate(payload))
            self._forward_to_observers(websocket, kind, request_id, caller_id, {**data, "payload": payload})
            return

        try:
            result = self._execute_hub_tool(cast(HubToolKind, kind), caller_id, payload)
        except ToolCallError as e:
            logger.warning("Tool call %s from %s refused: %s", kind, caller_id, e)
            result = {"success": False, "error": str(e)}
        except ValidationError:
            raise
        except Exception as e:
            logger.error("Tool call %s from %s failed: %s", kind, caller_id, e, exc_info=True)
            result = {"success": False, "error": str(e)}
        self._send(websocket, make_message(result_kind(kind), result, request_id))

    def _forward_to_observers(
        self,
        websocket: WebSocket,
        kind: str,
        request_id: str,
        caller_id: str,
        message: dict[str, Any],
    ) -> None:
        if not self.observers:
            logger.warning("No observer connected; failing %s from %s", kind, caller_id)
            self._send(
                websocket,
                make_message(result_kind(kind), {"success": False, "error": "No observer connected"}, request_id),
            )
            return
        self.pending.expire(MCP_REQUEST_TIMEOUT_S)
        self.pending.add(request_id, caller_id, kind, websocket)
        self._broadcast(message)
        logger.debug("Routing %s from %s to observers", kind, caller_id)

    def _route_response(self, kind: str, request_id: Optional[str], message: dict[str, Any]) -> None:
        if request_id is None:
            logger.warning("Dropping %s without requestId", kind)
            return
        pending = self.pending.resolve(request_id)
        if pending is None:
            logger.warning("No pending request for %s (%s)", request_id, kind)
            return
        self._send(pending.connection, message)
        logger.debug("Routed %s back to %s", kind, pending.agent_id)

    def _handle_notification(self, kind: str, payload: dict[str, Any]) -> None:
        if kind == "inbox.updated":
            p = InboxUpdatedPayload.model_validate(payload)
            self._send_to_agent(
                p.agent_id,
                make_message(
                    "mcp.inbox.notification",
                    {"agentId": p.agent_id, "messageCount": p.message_count, "latestTimestamp": p.latest_timestamp},
                ),
            )
            return

        recipients = payload.get("recipients")
        if not isinstance(recipients, list):
            recipients = [payload.get("agentId")]
        message = make_message(kind, payload)
        for agent_id in recipients:
            if isinstance(agent_id, str):
                self._send_to_agent(agent_id, message)

    def _send_to_agent(self, agent_id: str, message: dict[str, Any]) -> None:
        websocket = self.tool_channels.get(agent_id)
        if websocket is None:
            logger.debug("No tool channel for %s; dropping %s", agent_id, message.get("type"))
            return
        self._send(websocket, message)

    # ------------------------------------------------------------------
    # Hub-executed tool calls
    # ------------------------------------------------------------------

    def _find_agent_session(self, agent_id: str) -> Optional[tuple[str, StoredAgentMetadata]]:
        for session_id, metadata in self.session_metadata.items():
            if metadata.agent_id == agent_id:
                return session_id, metadata
        return None

    def _require_git_root(self, caller_id: str) -> str:
        found = self._find_agent_session(caller_id)
        project_dir = found[1].project_dir if found and found[1].project_dir else self.default_project_dir
        git_root = get_git_root(project_dir)
        if git_root is None:
            raise ToolCallError(f"Project for {caller_id} is not a git repository: {project_dir}")
        return git_root

    def _execute_hub_tool(self, kind: HubToolKind, caller_id: str, payload: dict[str, Any]) -> dict[str, object]:
        match kind:
            case "mcp.killWorker":
                return self.kill_worker(caller_id, WorkerForcePayload.model_validate(payload))
            case "mcp.getWorkerDiff":
                worker_id = WorkerPayload.model_validate(payload).worker_id
                return handle_get_worker_diff(self._require_git_root(caller_id), worker_id, self.main_branch)
            case "mcp.listWorkerFiles":
                worker_id = WorkerPayload.model_validate(payload).worker_id
                return handle_list_worker_files(self._require_git_root(caller_id), worker_id, self.main_branch)
            case "mcp.listWorkerCommits":
                worker_id = WorkerPayload.model_validate(payload).worker_id
                return handle_list_worker_commits(self._require_git_root(caller_id), worker_id, self.main_branch)
            case "mcp.checkMergeConflicts":
                worker_id = WorkerPayload.model_validate(payload).worker_id
                return handle_check_merge_conflicts(self._require_git_root(caller_id), caller_id, worker_id)
            case "mcp.mergeWorkerToStaging":
                worker_id = WorkerPayload.model_validate(payload).worker_id
                return handle_merge_worker_to_staging(self._require_git_root(caller_id), caller_id, worker_id)
            case "mcp.mergeStagingToMain":
                return handle_merge_staging_to_main(self._require_git_root(caller_id), caller_id, self.main_branch)
            case "mcp.cleanupWorkerWorktree":
                p = WorkerForcePayload.model_validate(payload)
                return self.cleanup_worker(self._require_git_root(caller_id), caller_id, p)
            case _:
                assert_never(kind)

    def cleanup_worker(self, git_root: str, caller_id: str, p: WorkerForcePayload) -> dict[str, object]:
        found = self._find_agent_session(p.worker_id)
        denied = check_kill_permission(caller_id, found[1] if found else None, p.force)
        if denied:
            return {"success": False, "error": denied}
        result = handle_cleanup_worker_worktree(git_root, p.worker_id, force=p.force, main_branch=self.main_branch)
        if not result.get("success"):
            return result
        session_id = None
        if found is not None:
            session_id, metadata = found
            self.sessions.dispose(session_id)
            self.session_metadata.pop(session_id, None)
            self._teardown_agent(metadata, force=p.force)
        self._announce_removal(p.worker_id, "cleanup", session_id)
        return result

    def kill_worker(self, caller_id: str, p: WorkerForcePayload) -> dict[str, object]:
        found = self._find_agent_session(p.worker_id)
        if found is None:
            return {"success": False, "terminated": False, "error": f"No session found for {p.worker_id}"}
        session_id, metadata = found
        denied = check_kill_permission(caller_id, metadata, p.force)
        if denied:
            return {"success": False, "terminated": False, "error": denied}

        self.sessions.dispose(session_id)
        self.session_metadata.pop(session_id, None)
        self._teardown_agent(metadata)
        self._announce_removal(p.worker_id, "kill", session_id)
        logger.info("Agent %s killed by %s", p.worker_id, caller_id)
        return {"success": True, "terminated": True, "message": f"Worker {p.worker_id} terminated"}

    def _announce_removal(self, agent_id: str, reason: str, session_id: Optional[str]) -> None:
        payload: dict[str, Any] = {"agentId": agent_id, "reason": reason}
        if session_id:
            payload["sessionId"] = session_id
        self._broadcast(make_message("agent.removed", payload))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _apply_reported_status(self, p: ReportStatusPayload) -> None:
        found = self._find_agent_session(p.caller_id)
        if found is not None:
            found[1].status_message = p.message
        self._publish_status(self.status.report(p.caller_id, p.state, p.message))

    def _publish_status(self, change: Optional[StatusChange]) -> None:
        if change is None:
            return
        found = self._find_agent_session(change.agent_id)
        if found is not None:
            found[1].detailed_status = change.state
        self._broadcast(make_message("mcp.statusUpdate", change.to_payload()))

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def collect_activity(self) -> list[dict[str, Any]]:
        """Per-agent activity with commit counts, using non-blocking git."""
        agents: list[dict[str, Any]] = []
        now = _now_ms()
        quiet_after_ms = int(self.activity_interval_s * 2 * 1000)
        for metadata in list(self.session_metadata.values()):
            activity = self._activity.get(metadata.agent_id)
            if activity is None:
                continue
            commit_count = 0
            recent: list[str] = []
            if metadata.branch_name and metadata.workspace_path:
                commit_count = await count_commits_async(
                    metadata.workspace_path, metadata.branch_name, self.main_branch
                )
                recent = await recent_commits_async(
                    metadata.workspace_path, metadata.branch_name, ACTIVITY_RECENT_COMMITS, self.main_branch
                )
            agents.append(
                {
                    "agentId": metadata.agent_id,
                    "createdAt": activity.created_at,
                    "lastActivityAt": activity.last_activity_at,
                    "gitCommitCount": commit_count,
                    "gitRecentCommits": recent,
                }
            )
            if activity.last_activity_at and now - activity.last_activity_at >= quiet_after_ms:
                self._publish_status(self.status.infer(metadata.agent_id, DetailedStatus.IDLE))
        return agents

    async def _activity_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.activity_interval_s)
            self.pending.expire(MCP_REQUEST_TIMEOUT_S)
            if not self.observers or not self.session_metadata:
                continue
            try:
                agents = await self.collect_activity()
            except Exception as e:
                logger.error("Activity poll failed: %s", e, exc_info=True)
                continue
            if agents:
                self._broadcast(make_message("agent.activity", {"agents": agents}))

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    def _bind_socket(self) -> socket.socket:
        """Bind the listening socket up front so a busy port fails loudly."""
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        sock.set_inheritable(True)
        return sock

    async def start(self) -> None:
        """Start serving.

        Raises:
            OSError: the port is already in use
            RuntimeError: uvicorn exited during startup
        """
        if self.server_task and not self.server_task.done():
            logger.warning("Hub already running; skipping start")
            return

        sock = self._bind_socket()
        server_config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            ws_ping_interval=WS_PING_INTERVAL_S,
            ws_ping_timeout=WS_PING_TIMEOUT_S,
        )
        self.server = uvicorn.Server(server_config)
        server = self.server
        # Avoid uvicorn's signal handling to keep the daemon in control
        serve_coro = server._serve(sockets=[sock]) if hasattr(server, "_serve") else server.serve(sockets=[sock])
        self.server_task = asyncio.create_task(serve_coro)

        deadline = time.monotonic() + SERVER_STARTUP_TIMEOUT_S
        while not server.started:
            if self.server_task.done():
                exc = self.server_task.exception()
                raise RuntimeError("Hub server exited during startup") from exc
            if time.monotonic() > deadline:
                raise TimeoutError("Hub server failed to start within timeout")
            await asyncio.sleep(0.05)

        self._running = True
        self._activity_task = asyncio.create_task(self._activity_loop())
        logger.info("Hub listening on %s", self.ws_url)

    async def stop(self) -> None:
        self._running = False
        logger.info("Hub stopping")
        if self._activity_task:
            self._activity_task.cancel()
            try:
                await self._activity_task
            except asyncio.CancelledError:
                pass

        for metadata in list(self.session_metadata.values()):
            self._teardown_agent(metadata)
        self.session_metadata.clear()
        self.sessions.dispose_all()

        for websocket in list(self._outboxes):
            try:
                await asyncio.wait_for(websocket.close(), timeout=1.0)
            except (TimeoutError, RuntimeError, OSError) as e:
                logger.debug("Error closing WebSocket: %s", e)

        if self.server is not None:
            self.server.should_exit = True
        if self.server_task is not None:
            try:
                await asyncio.wait_for(self.server_task, timeout=SERVER_SHUTDOWN_TIMEOUT_S)
            except TimeoutError:
                logger.warning("Hub server did not stop in time; cancelling")
                self.server_task.cancel()
        logger.info("Hub stopped")
