"""Data models for hivegrid agents.

Wire-facing models use camelCase aliases (agentId, cellType, ...) because the
observer process and the agent-side tool process exchange JSON in that shape.
Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CellType = Literal["terminal", "orchestrator", "worker"]
AgentStatus = Literal["idle", "working", "blocked", "offline"]

AGENT_CELL_TYPES: frozenset[str] = frozenset({"orchestrator", "worker"})


class DetailedStatus(str, Enum):
    """Fine-grained agent status.

    Lifecycle: pending -> (idle|working) -> ... -> (done|error|cancelled).
    See hivegrid.core.status for the transition table.
    """

    PENDING = "pending"  # Spawned, agent CLI still booting
    IDLE = "idle"  # At prompt, waiting for a command
    WORKING = "working"
    WAITING_INPUT = "waiting_input"
    WAITING_PERMISSION = "waiting_permission"
    DONE = "done"
    STUCK = "stuck"  # Explicitly asked for help
    ERROR = "error"
    CANCELLED = "cancelled"


class WireModel(BaseModel):  # type: ignore[explicit-any]
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HexCoordinate(WireModel):
    """Axial coordinate on the hex grid (q is column, r is row)."""

    model_config = ConfigDict(frozen=True)

    q: int
    r: int


class AgentSnapshot(WireModel):
    """Minimal agent info sent by the observer when creating a session."""

    agent_id: str
    cell_type: CellType
    hex: HexCoordinate
    status: AgentStatus = "idle"
    connections: list[str] = Field(default_factory=list)

    @property
    def is_agent(self) -> bool:
        """True for cell types that run an agent CLI in an isolated workspace."""
        return self.cell_type in AGENT_CELL_TYPES


class StoredAgentMetadata(AgentSnapshot):
    """Agent metadata kept by the hub for the lifetime of its session."""

    parent_id: Optional[str] = None
    parent_hex: Optional[HexCoordinate] = None
    task: Optional[str] = None
    task_details: Optional[str] = None
    initial_prompt: Optional[str] = None
    instructions: Optional[str] = None
    detailed_status: DetailedStatus = DetailedStatus.PENDING
    status_message: Optional[str] = None
    project_dir: Optional[str] = None
    workspace_path: Optional[str] = None
    branch_name: Optional[str] = None
    created_at: Optional[int] = None  # Epoch ms


def hex_distance(a: HexCoordinate, b: HexCoordinate) -> int:
    """Distance between two axial coordinates via cube conversion."""
    a_s = -a.q - a.r
    b_s = -b.q - b.r
    return max(abs(a.q - b.q), abs(a.r - b.r), abs(a_s - b_s))
