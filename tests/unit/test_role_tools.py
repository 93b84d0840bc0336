"""Unit tests for role-based tool filtering."""

import pytest

from hivegrid.mcp.role_tools import filter_tools, is_tool_allowed
from hivegrid.mcp.tool_definitions import get_tool_definitions

pytestmark = pytest.mark.unit


def test_worker_cannot_spawn_or_merge():
    assert not is_tool_allowed("worker", "spawn_agent")
    assert not is_tool_allowed("worker", "merge_staging_to_main")
    assert not is_tool_allowed("worker", "kill_worker")


def test_worker_can_report_back():
    assert is_tool_allowed("worker", "report_result")
    assert is_tool_allowed("worker", "report_status")


def test_orchestrator_is_unrestricted():
    tools = get_tool_definitions()
    assert filter_tools("orchestrator", tools) == tools


def test_unknown_role_is_unrestricted():
    # Agents started without a cell type (manual runs) see the full list
    assert is_tool_allowed(None, "merge_worker_to_staging")
