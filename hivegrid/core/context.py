"""Spawn-time context for agents.

When an agent starts, the hub writes a JSON snapshot of what the agent can
see: its own identity, nearby agents on the grid, an assigned task (workers)
and its capabilities. The file path reaches the agent process through the
HIVEGRID_CONTEXT environment variable and nowhere else.

The snapshot is immutable; it is built once and deleted when the agent exits.
"""

from __future__ import annotations

import json
import tempfile
import time
import uuid
from pathlib import Path
from typing import Literal, Optional, Sequence

from pydantic import ConfigDict

from hivegrid.constants import CONTEXT_FILE_PREFIX, DEFAULT_MAX_DISTANCE, MAX_CHILDREN, MCP_SERVER_NAME
from hivegrid.core.models import AgentSnapshot, AgentStatus, CellType, HexCoordinate, WireModel, hex_distance
from hivegrid.logging_config import get_logger

logger = get_logger(__name__)

_T = f"mcp__{MCP_SERVER_NAME}__"

ORCHESTRATOR_SYSTEM_PROMPT = f"""
<hivegrid_role>
You are a hivegrid orchestrator. You split work across workers, merge their
branches into your staging worktree, and get human approval before anything
reaches main. The user has full terminal access and may talk to you while
workers run.
</hivegrid_role>

<tools>
Coordination:
- {_T}spawn_agent(task): start a worker in its own worktree. Returns its agentId at once.
- {_T}get_worker_status(workerId): one worker's status, non-blocking.
- {_T}await_worker(workerId): blocks until the worker finishes. Only for single-worker flows.
- {_T}get_messages(fromAgent): results workers sent to your inbox.
- {_T}kill_worker(workerId): terminate a stuck worker.

Review:
- {_T}get_worker_diff(workerId): full diff of the worker's branch against main.
- {_T}list_worker_files(workerId): files the worker changed.
- {_T}list_worker_commits(workerId): the worker's commits.

Merge:
- {_T}check_merge_conflicts(workerId): dry-run merge into your staging worktree.
- {_T}merge_worker_to_staging(workerId): merge the worker's branch into your worktree.
- {_T}merge_staging_to_main(): promote your branch to main. Human approval first.
- {_T}cleanup_worker_worktree(workerId): delete the worker's worktree and branch.

Status:
- {_T}report_status(state): update your status badge.
- {_T}get_identity(): your agentId, cell type and grid position.
</tools>

<workflow>
1. Spawn workers for independent pieces of work and tell the user how many.
2. Stay responsive. Check workers when asked; collect results with get_messages.
3. Review each finished worker's files, commits and diff.
4. check_merge_conflicts, then merge_worker_to_staging. On conflict, resolve in
   your worktree (edit, git add, git commit) or discard the worker.
5. Summarize staged changes and ask the user to approve the merge to main.
6. merge_staging_to_main, clean up every worker, report_status("done").
</workflow>

<rules>
- Never call merge_staging_to_main without explicit human approval.
- Always clean up a worker's worktree after merging or rejecting it.
- Report done only after every worker is handled.
</rules>
""".strip()

WORKER_SYSTEM_PROMPT = f"""
<hivegrid_role>
You are a hivegrid worker. Carry out your assigned task on your own branch.
The user has full terminal access if collaboration is needed.
</hivegrid_role>

<environment>
- HIVEGRID_PARENT_ID: your orchestrator's agentId. Send results there.
</environment>

<tools>
- {_T}report_result(parentId, result, success): send your result to the parent's inbox.
- {_T}report_status(state): update your status badge.
</tools>

<protocol>
1. Do the task. Make reasonable assumptions.
2. Verify by running the project's tests and linters. Commit your work.
3. report_result to HIVEGRID_PARENT_ID.
4. report_status("done").
</protocol>

<rules>
- Verify with real test runs, never by asking for manual QA.
- Add tests if none exist.
- Dependency directories are shared links; never install or remove packages.
</rules>
""".strip()


class ContextModel(WireModel):
    model_config = ConfigDict(frozen=True)


class ContextSelf(ContextModel):
    agent_id: str
    cell_type: CellType
    hex: HexCoordinate
    status: AgentStatus


class ContextAgent(ContextModel):
    """Another agent as seen from the spawning agent."""

    agent_id: str
    cell_type: CellType
    hex: HexCoordinate
    status: AgentStatus
    distance: int
    is_parent: bool = False
    is_child: bool = False


class ContextConnection(ContextModel):
    from_: str
    to: str
    type: Literal["parent-child", "sibling", "communication"] = "parent-child"

    model_config = ConfigDict(frozen=True, alias_generator=lambda name: "from" if name == "from_" else name)


class ContextGrid(ContextModel):
    agents: list[ContextAgent]
    connections: list[ContextConnection]


class ContextTask(ContextModel):
    task_id: str
    description: str
    details: Optional[str] = None
    assigned_by: str


class ContextParent(ContextModel):
    agent_id: str
    hex: Optional[HexCoordinate] = None


class ContextCapabilities(ContextModel):
    can_spawn: bool
    can_message: bool = True
    max_children: int = MAX_CHILDREN


class ContextBody(ContextModel):
    self_: ContextSelf
    grid: ContextGrid
    task: Optional[ContextTask] = None
    parent: Optional[ContextParent] = None
    capabilities: ContextCapabilities

    model_config = ConfigDict(frozen=True, alias_generator=lambda name: "self" if name == "self_" else name)


class AgentContext(ContextModel):
    jsonrpc: Literal["2.0"] = "2.0"
    context: ContextBody

    def to_json(self) -> str:
        # Keep explicit nulls: a worker without a task reads `"task": null`
        return self.model_dump_json(by_alias=True, indent=2)


class TaskAssignment(ContextModel):
    task: str
    assigned_by: str
    task_details: Optional[str] = None
    parent_hex: Optional[HexCoordinate] = None


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"


def build_context(
    self_agent: AgentSnapshot,
    all_agents: Sequence[AgentSnapshot],
    max_distance: int = DEFAULT_MAX_DISTANCE,
    task_assignment: Optional[TaskAssignment] = None,
    max_children: int = MAX_CHILDREN,
) -> AgentContext:
    """Build the context snapshot for a spawning agent.

    Only agents within `max_distance` hexes are visible, nearest first. An
    agent is the spawner's parent when it appears in the spawner's connections
    (or assigned the task); it is a child when the spawner appears in its.
    """
    parent_id = task_assignment.assigned_by if task_assignment else None
    visible: list[ContextAgent] = []
    for agent in all_agents:
        if agent.agent_id == self_agent.agent_id:
            continue
        distance = hex_distance(self_agent.hex, agent.hex)
        if distance > max_distance:
            continue
        is_parent = agent.agent_id in self_agent.connections or agent.agent_id == parent_id
        is_child = not is_parent and self_agent.agent_id in agent.connections
        visible.append(
            ContextAgent(
                agent_id=agent.agent_id,
                cell_type=agent.cell_type,
                hex=agent.hex,
                status=agent.status,
                distance=distance,
                is_parent=is_parent,
                is_child=is_child,
            )
        )
    visible.sort(key=lambda a: a.distance)

    connections: list[ContextConnection] = []
    for agent in visible:
        if agent.is_parent:
            connections.append(ContextConnection(from_=agent.agent_id, to=self_agent.agent_id))
        elif agent.is_child:
            connections.append(ContextConnection(from_=self_agent.agent_id, to=agent.agent_id))

    task = None
    parent = None
    if task_assignment:
        task = ContextTask(
            task_id=new_task_id(),
            description=task_assignment.task,
            details=task_assignment.task_details,
            assigned_by=task_assignment.assigned_by,
        )
        parent = ContextParent(agent_id=task_assignment.assigned_by, hex=task_assignment.parent_hex)

    return AgentContext(
        context=ContextBody(
            self_=ContextSelf(
                agent_id=self_agent.agent_id,
                cell_type=self_agent.cell_type,
                hex=self_agent.hex,
                status=self_agent.status,
            ),
            grid=ContextGrid(agents=visible, connections=connections),
            task=task,
            parent=parent,
            capabilities=ContextCapabilities(
                can_spawn=self_agent.cell_type == "orchestrator",
                max_children=max_children,
            ),
        )
    )


def get_context_path(agent_id: str, directory: Optional[str | Path] = None) -> Path:
    base = Path(directory) if directory else Path(tempfile.gettempdir())
    return base / f"{CONTEXT_FILE_PREFIX}{agent_id}.json"


def write_context_file(agent_id: str, context: AgentContext, directory: Optional[str | Path] = None) -> str:
    path = get_context_path(agent_id, directory)
    path.write_text(context.to_json() + "\n", encoding="utf-8")
    logger.info("Wrote context %s", path)
    return str(path)


def read_context_file(path: str | Path) -> AgentContext:
    """Parse a context file.

    Raises:
        OSError: the file cannot be read
        pydantic.ValidationError: the content is not a valid context
    """
    return AgentContext.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))


def cleanup_context_file(agent_id: str, directory: Optional[str | Path] = None) -> None:
    """Delete the agent's context file. Safe to call when it is already gone."""
    path = get_context_path(agent_id, directory)
    try:
        path.unlink()
        logger.info("Cleaned up context %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove context %s: %s", path, e)
