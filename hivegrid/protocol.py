"""Websocket message protocol between the hub, observers and tool-call processes.

Every message is a JSON object `{"type": ..., "requestId"?: ..., "payload": {...}}`.

Observers (the grid UI) send `terminal.*`, `sessions.*`, `project.*` requests
and answer forwarded tool calls with `mcp.<kind>.result`. Tool-call processes
send `mcp.register` once, then `mcp.<kind>` requests. The hub never answers a
forwarded request itself; it only routes.
"""

from __future__ import annotations

from typing import Any, Literal, Optional, get_args

from pydantic import ConfigDict, Field

from hivegrid.constants import DEFAULT_COLS, DEFAULT_ROWS
from hivegrid.core.models import AgentSnapshot, DetailedStatus, HexCoordinate, WireModel

ObserverRequestKind = Literal[
    "terminal.create",
    "terminal.write",
    "terminal.resize",
    "terminal.dispose",
    "sessions.list",
    "sessions.clear",
    "project.validate",
]

# Tool calls answered by the observer, which owns grid state
ForwardedToolKind = Literal[
    "mcp.spawn",
    "mcp.getGrid",
    "mcp.broadcast",
    "mcp.reportStatus",
    "mcp.reportResult",
    "mcp.getMessages",
    "mcp.getWorkerStatus",
]

# Tool calls the hub executes itself (git, merge, session control)
HubToolKind = Literal[
    "mcp.getWorkerDiff",
    "mcp.listWorkerFiles",
    "mcp.listWorkerCommits",
    "mcp.checkMergeConflicts",
    "mcp.mergeWorkerToStaging",
    "mcp.mergeStagingToMain",
    "mcp.cleanupWorkerWorktree",
    "mcp.killWorker",
]

NotificationKind = Literal["inbox.updated", "mcp.broadcast.delivery", "mcp.statusUpdate"]

REGISTER_KIND = "mcp.register"
RESULT_SUFFIX = ".result"

OBSERVER_REQUEST_KINDS: frozenset[str] = frozenset(get_args(ObserverRequestKind))
FORWARDED_TOOL_KINDS: frozenset[str] = frozenset(get_args(ForwardedToolKind))
HUB_TOOL_KINDS: frozenset[str] = frozenset(get_args(HubToolKind))
TOOL_KINDS: frozenset[str] = FORWARDED_TOOL_KINDS | HUB_TOOL_KINDS
NOTIFICATION_KINDS: frozenset[str] = frozenset(get_args(NotificationKind))

MessageClass = Literal["observer", "register", "tool", "response", "notification", "unknown"]


def classify(kind: str) -> MessageClass:
    """Sort an incoming message type into the hub's dispatch classes."""
    if kind in OBSERVER_REQUEST_KINDS:
        return "observer"
    if kind == REGISTER_KIND:
        return "register"
    if kind in TOOL_KINDS:
        return "tool"
    if kind.endswith(RESULT_SUFFIX) and kind[: -len(RESULT_SUFFIX)] in TOOL_KINDS:
        return "response"
    if kind in NOTIFICATION_KINDS:
        return "notification"
    return "unknown"


def result_kind(kind: str) -> str:
    return f"{kind}{RESULT_SUFFIX}"


def is_mcp_message(message: object) -> bool:
    """True for messages a tool-call process or the tool-call routing path handles."""
    if not isinstance(message, dict):
        return False
    kind = message.get("type")
    return isinstance(kind, str) and (kind.startswith("mcp.") or kind.startswith("inbox."))


def make_message(kind: str, payload: dict[str, Any], request_id: Optional[str] = None) -> dict[str, Any]:
    message: dict[str, Any] = {"type": kind, "payload": payload}
    if request_id is not None:
        message["requestId"] = request_id
    return message


class Envelope(WireModel):
    """Outer shape shared by every message."""

    model_config = ConfigDict(extra="ignore")

    type: str
    request_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class Payload(WireModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Observer requests
# ---------------------------------------------------------------------------


class TerminalCreatePayload(Payload):
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    shell: Optional[str] = None
    cwd: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    agent_snapshot: Optional[AgentSnapshot] = None
    all_agents: Optional[list[AgentSnapshot]] = None
    initial_prompt: Optional[str] = None
    instructions: Optional[str] = None
    task: Optional[str] = None
    task_details: Optional[str] = None
    parent_id: Optional[str] = None
    parent_hex: Optional[HexCoordinate] = None
    model: Optional[str] = None
    project_dir: Optional[str] = None


class TerminalWritePayload(Payload):
    session_id: str
    data: str


class TerminalResizePayload(Payload):
    session_id: str
    cols: int
    rows: int


class SessionIdPayload(Payload):
    session_id: str


class ProjectValidatePayload(Payload):
    path: str


class InboxUpdatedPayload(Payload):
    agent_id: str
    message_count: int = 0
    latest_timestamp: Optional[str] = None


# ---------------------------------------------------------------------------
# Tool-call requests
# ---------------------------------------------------------------------------


class RegisterPayload(Payload):
    agent_id: str


class ToolPayload(Payload):
    caller_id: str


class ReportStatusPayload(ToolPayload):
    state: DetailedStatus
    message: Optional[str] = None


class WorkerPayload(ToolPayload):
    worker_id: str


class WorkerForcePayload(WorkerPayload):
    force: bool = False

