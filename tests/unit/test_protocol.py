"""Unit tests for message classification and payload models."""

import pytest
from pydantic import ValidationError

from hivegrid.core.models import DetailedStatus
from hivegrid.protocol import (
    FORWARDED_TOOL_KINDS,
    HUB_TOOL_KINDS,
    ReportStatusPayload,
    TerminalCreatePayload,
    WorkerForcePayload,
    classify,
    is_mcp_message,
    make_message,
    result_kind,
)


@pytest.mark.unit
class TestClassify:
    @pytest.mark.parametrize(
        ("kind", "expected"),
        [
            ("terminal.create", "observer"),
            ("sessions.clear", "observer"),
            ("project.validate", "observer"),
            ("mcp.register", "register"),
            ("mcp.spawn", "tool"),
            ("mcp.killWorker", "tool"),
            ("mcp.spawn.result", "response"),
            ("mcp.mergeStagingToMain.result", "response"),
            ("inbox.updated", "notification"),
            ("mcp.statusUpdate", "notification"),
            ("mcp.bogus", "unknown"),
            ("mcp.bogus.result", "unknown"),
            ("terminal.explode", "unknown"),
        ],
    )
    def test_classify(self, kind, expected):
        assert classify(kind) == expected

    def test_forwarded_and_hub_kinds_are_disjoint(self):
        assert not FORWARDED_TOOL_KINDS & HUB_TOOL_KINDS


@pytest.mark.unit
class TestMessages:
    def test_make_message_omits_missing_request_id(self):
        assert make_message("terminal.data", {"x": 1}) == {"type": "terminal.data", "payload": {"x": 1}}

    def test_make_message_with_request_id(self):
        message = make_message("mcp.spawn", {}, "req-1")

        assert message["requestId"] == "req-1"

    def test_result_kind(self):
        assert result_kind("mcp.getGrid") == "mcp.getGrid.result"

    def test_is_mcp_message(self):
        assert is_mcp_message({"type": "mcp.anything"})
        assert is_mcp_message({"type": "inbox.updated"})
        assert not is_mcp_message({"type": "terminal.create"})
        assert not is_mcp_message(["mcp.spawn"])


@pytest.mark.unit
class TestPayloads:
    def test_terminal_create_defaults(self):
        payload = TerminalCreatePayload.model_validate({})

        assert payload.cols == 80
        assert payload.rows == 24
        assert payload.agent_snapshot is None
        assert payload.env == {}

    def test_terminal_create_camel_case(self):
        payload = TerminalCreatePayload.model_validate(
            {
                "agentSnapshot": {"agentId": "a", "cellType": "worker", "hex": {"q": 1, "r": 2}},
                "parentId": "orch",
                "taskDetails": "details",
                "unknownField": True,
            }
        )

        assert payload.agent_snapshot is not None
        assert payload.agent_snapshot.agent_id == "a"
        assert payload.agent_snapshot.is_agent
        assert payload.parent_id == "orch"
        assert payload.task_details == "details"

    def test_report_status_validates_state(self):
        payload = ReportStatusPayload.model_validate({"callerId": "a", "state": "stuck"})

        assert payload.state is DetailedStatus.STUCK
        with pytest.raises(ValidationError):
            ReportStatusPayload.model_validate({"callerId": "a", "state": "sleeping"})

    def test_worker_force_defaults_false(self):
        payload = WorkerForcePayload.model_validate({"callerId": "o", "workerId": "w"})

        assert payload.force is False
