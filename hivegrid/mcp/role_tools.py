"""Role-based tool filtering for hivegrid MCP.

Orchestrators see every tool. Workers get the subset needed to do one task
and report back; spawning, merging and worker management stay with their
parent.
"""

from typing import Iterable

from mcp.types import Tool

WORKER_ALLOWED_TOOLS = frozenset(
    {
        "report_status",
        "report_result",
        "get_messages",
        "broadcast",
        "get_grid_state",
        "get_identity",
    }
)


def is_tool_allowed(cell_type: str | None, tool_name: str) -> bool:
    if cell_type == "worker":
        return tool_name in WORKER_ALLOWED_TOOLS
    return True


def filter_tools(cell_type: str | None, tools: Iterable[Tool]) -> list[Tool]:
    return [tool for tool in tools if is_tool_allowed(cell_type, tool.name)]
