"""MCP tool definitions exposed to hivegrid agents.

Tool names are unprefixed; the agent CLI namespaces them as
`mcp__hivegrid__<name>`, which is what the launch allowlist matches.
"""

# mypy: disable-error-code="misc"
# JSON schemas inherently contain Any types - this is expected for MCP tool inputSchema definitions

from mcp.types import Tool

from hivegrid.constants import DEFAULT_MAX_DISTANCE
from hivegrid.core.models import DetailedStatus

_WORKER_ID: dict[str, object] = {  # guard: loose-dict - JSON Schema
    "type": "string",
    "description": "Agent ID of the worker (e.g. 'agent-1718000000000-ab12')",
}

_FORCE: dict[str, object] = {  # guard: loose-dict - JSON Schema
    "type": "boolean",
    "default": False,
}

# Tool name -> hub request kind, for tools that are a single round-trip
TOOL_REQUEST_KINDS: dict[str, str] = {
    "spawn_agent": "mcp.spawn",
    "get_grid_state": "mcp.getGrid",
    "broadcast": "mcp.broadcast",
    "report_status": "mcp.reportStatus",
    "report_result": "mcp.reportResult",
    "get_worker_status": "mcp.getWorkerStatus",
    "get_worker_diff": "mcp.getWorkerDiff",
    "list_worker_files": "mcp.listWorkerFiles",
    "list_worker_commits": "mcp.listWorkerCommits",
    "check_merge_conflicts": "mcp.checkMergeConflicts",
    "merge_worker_to_staging": "mcp.mergeWorkerToStaging",
    "merge_staging_to_main": "mcp.mergeStagingToMain",
    "cleanup_worker_worktree": "mcp.cleanupWorkerWorktree",
    "kill_worker": "mcp.killWorker",
}


def _worker_tool(name: str, title: str, description: str) -> Tool:
    return Tool(
        name=name,
        title=title,
        description=description,
        inputSchema={
            "type": "object",
            "properties": {"workerId": _WORKER_ID},
            "required": ["workerId"],
        },
    )


def get_tool_definitions() -> list[Tool]:
    """Every hivegrid tool; filter with hivegrid.mcp.role_tools before listing."""
    return [
        Tool(
            name="spawn_agent",
            title="Hivegrid: Spawn Agent",
            description=(
                "Spawn a new agent on the hex grid. If coordinates are omitted the agent is placed next to you. "
                "To delegate work, spawn a worker with a task: it gets its own git branch and worktree, "
                "and reports back with report_result when done."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "q": {"type": "integer", "description": "Hex column (optional, auto-positions if omitted)"},
                    "r": {"type": "integer", "description": "Hex row (optional, auto-positions if omitted)"},
                    "cellType": {
                        "type": "string",
                        "enum": ["terminal", "orchestrator", "worker"],
                        "description": "Type of cell to spawn",
                    },
                    "task": {"type": "string", "description": "Task for a worker (one line)"},
                    "taskDetails": {"type": "string", "description": "Longer task description, acceptance criteria"},
                    "instructions": {
                        "type": "string",
                        "description": "Full prompt for the worker; replaces the default prompt built from task",
                    },
                    "model": {"type": "string", "description": "Model override (e.g. 'sonnet', 'haiku', 'opus')"},
                },
                "required": ["cellType"],
            },
        ),
        Tool(
            name="get_grid_state",
            title="Hivegrid: Get Grid State",
            description="Get agents on the grid within a hex distance of you, with their status.",
            inputSchema={
                "type": "object",
                "properties": {
                    "maxDistance": {
                        "type": "integer",
                        "default": DEFAULT_MAX_DISTANCE,
                        "description": f"Max hex distance from you (default: {DEFAULT_MAX_DISTANCE})",
                    },
                },
            },
        ),
        Tool(
            name="broadcast",
            title="Hivegrid: Broadcast",
            description="Send a message to every agent within a hex radius of you.",
            inputSchema={
                "type": "object",
                "properties": {
                    "radius": {"type": "integer", "description": "Hex radius to reach"},
                    "broadcastType": {"type": "string", "description": "Message type label (e.g. 'status', 'question')"},
                    "broadcastPayload": {"description": "Arbitrary JSON payload delivered to recipients"},
                },
                "required": ["radius", "broadcastType"],
            },
        ),
        Tool(
            name="report_status",
            title="Hivegrid: Report Status",
            description=(
                "Report your current status so the operator and your parent can see it. "
                "Use 'stuck' when you need help, 'waiting_input' when you need an answer, 'done' when finished."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "state": {
                        "type": "string",
                        "enum": [s.value for s in DetailedStatus],
                        "description": "New status",
                    },
                    "message": {"type": "string", "description": "Short human-readable detail"},
                },
                "required": ["state"],
            },
        ),
        Tool(
            name="report_result",
            title="Hivegrid: Report Result",
            description=(
                "Send your task result to your parent orchestrator. Call exactly once when the task is finished, "
                "after committing your changes."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "result": {"description": "Result data (summary string or JSON)"},
                    "success": {"type": "boolean", "description": "Whether the task succeeded"},
                    "message": {"type": "string", "description": "Optional note for the parent"},
                    "parentId": {
                        "type": "string",
                        "description": "Parent agent ID (defaults to the parent you were spawned by)",
                    },
                },
                "required": ["result", "success"],
            },
        ),
        Tool(
            name="get_messages",
            title="Hivegrid: Get Messages",
            description=(
                "Read messages from your inbox (worker results, broadcasts). "
                "Set wait=true to block until a new message arrives or the timeout expires."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "since": {"type": "string", "description": "Only messages after this ISO timestamp"},
                    "fromAgent": {"type": "string", "description": "Only messages from this agent"},
                    "wait": {"type": "boolean", "default": False},
                    "timeoutSeconds": {"type": "number", "default": 60, "description": "Max wait when wait=true"},
                },
            },
        ),
        _worker_tool(
            "get_worker_status",
            "Hivegrid: Get Worker Status",
            "Get the current detailed status of one of your workers.",
        ),
        Tool(
            name="await_worker",
            title="Hivegrid: Await Worker",
            description="Wait until a worker reaches done, error or cancelled, or the timeout expires.",
            inputSchema={
                "type": "object",
                "properties": {
                    "workerId": _WORKER_ID,
                    "timeoutSeconds": {"type": "number", "default": 300},
                },
                "required": ["workerId"],
            },
        ),
        _worker_tool(
            "get_worker_diff",
            "Hivegrid: Get Worker Diff",
            "Full diff of a worker's branch against main, with file/insertion/deletion counts.",
        ),
        _worker_tool(
            "list_worker_files",
            "Hivegrid: List Worker Files",
            "Files changed on a worker's branch compared to main (git diff --stat).",
        ),
        _worker_tool(
            "list_worker_commits",
            "Hivegrid: List Worker Commits",
            "Commits on a worker's branch that are not in main.",
        ),
        _worker_tool(
            "check_merge_conflicts",
            "Hivegrid: Check Merge Conflicts",
            "Dry-run merge of a worker's branch into your staging branch. Changes nothing.",
        ),
        _worker_tool(
            "merge_worker_to_staging",
            "Hivegrid: Merge Worker To Staging",
            "Merge a worker's branch into your staging branch (your own worktree). Commit your own work first.",
        ),
        Tool(
            name="merge_staging_to_main",
            title="Hivegrid: Merge Staging To Main",
            description=(
                "Merge your staging branch into main. Only do this after the operator approved the changes. "
                "Serialized across agents: if another merge is in progress you get its holder and age; retry later."
            ),
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="cleanup_worker_worktree",
            title="Hivegrid: Cleanup Worker Worktree",
            description=(
                "Remove a worker's worktree and branch. Refuses while the branch has commits not in main "
                "unless force=true."
            ),
            inputSchema={
                "type": "object",
                "properties": {"workerId": _WORKER_ID, "force": _FORCE},
                "required": ["workerId"],
            },
        ),
        Tool(
            name="kill_worker",
            title="Hivegrid: Kill Worker",
            description="Terminate one of your workers' processes. Workers of other orchestrators need force=true.",
            inputSchema={
                "type": "object",
                "properties": {"workerId": _WORKER_ID, "force": _FORCE},
                "required": ["workerId"],
            },
        ),
        Tool(
            name="get_identity",
            title="Hivegrid: Get Identity",
            description="Your agent ID, position, nearby agents, task and capabilities, as given at spawn time.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]
