"""Unit tests for context building and context files."""

import json

import pytest

from hivegrid.core.context import (
    AgentContext,
    TaskAssignment,
    build_context,
    cleanup_context_file,
    get_context_path,
    new_task_id,
    read_context_file,
    write_context_file,
)
from hivegrid.core.models import AgentSnapshot, HexCoordinate, hex_distance


def _agent(agent_id, q, r, cell_type="orchestrator", connections=None, status="idle"):
    return AgentSnapshot(
        agent_id=agent_id,
        cell_type=cell_type,
        hex=HexCoordinate(q=q, r=r),
        status=status,
        connections=connections or [],
    )


@pytest.mark.unit
class TestHexDistance:
    def test_same_cell_is_zero(self):
        assert hex_distance(HexCoordinate(q=2, r=-1), HexCoordinate(q=2, r=-1)) == 0

    def test_neighbours_are_one(self):
        origin = HexCoordinate(q=0, r=0)
        for q, r in [(1, 0), (1, -1), (0, -1), (-1, 0), (-1, 1), (0, 1)]:
            assert hex_distance(origin, HexCoordinate(q=q, r=r)) == 1

    def test_uses_cube_distance(self):
        assert hex_distance(HexCoordinate(q=0, r=0), HexCoordinate(q=3, r=-1)) == 3
        assert hex_distance(HexCoordinate(q=-2, r=0), HexCoordinate(q=1, r=1)) == 4


@pytest.mark.unit
class TestBuildContext:
    def test_filters_by_distance_and_sorts_nearest_first(self):
        me = _agent("orch-1", 0, 0)
        agents = [
            me,
            _agent("far", 5, 0, "terminal"),
            _agent("two", 2, 0, "terminal"),
            _agent("one", 1, 0, "terminal"),
        ]

        context = build_context(me, agents, max_distance=3)

        ids = [a.agent_id for a in context.context.grid.agents]
        assert ids == ["one", "two"]
        assert [a.distance for a in context.context.grid.agents] == [1, 2]

    def test_excludes_self(self):
        me = _agent("orch-1", 0, 0)

        context = build_context(me, [me])

        assert context.context.grid.agents == []

    def test_parent_and_child_edges(self):
        me = _agent("orch-1", 0, 0, connections=["boss"])
        boss = _agent("boss", 1, 0)
        child = _agent("worker-1", 0, 1, "worker", connections=["orch-1"])

        context = build_context(me, [me, boss, child])

        by_id = {a.agent_id: a for a in context.context.grid.agents}
        assert by_id["boss"].is_parent is True
        assert by_id["boss"].is_child is False
        assert by_id["worker-1"].is_child is True
        edges = {(c.from_, c.to) for c in context.context.grid.connections}
        assert edges == {("boss", "orch-1"), ("orch-1", "worker-1")}

    def test_worker_with_task_assignment(self):
        me = _agent("worker-1", 1, 0, "worker")
        parent = _agent("orch-1", 0, 0)
        assignment = TaskAssignment(
            task="Fix the login bug",
            assigned_by="orch-1",
            task_details="See auth.py",
            parent_hex=HexCoordinate(q=0, r=0),
        )

        context = build_context(me, [me, parent], task_assignment=assignment)

        body = context.context
        assert body.task is not None
        assert body.task.description == "Fix the login bug"
        assert body.task.details == "See auth.py"
        assert body.task.assigned_by == "orch-1"
        assert body.task.task_id.startswith("task-")
        assert body.parent is not None
        assert body.parent.agent_id == "orch-1"
        assert body.parent.hex == HexCoordinate(q=0, r=0)
        # The assigner counts as parent even without a connection entry
        assert body.grid.agents[0].is_parent is True

    def test_capabilities_by_cell_type(self):
        orchestrator = build_context(_agent("o", 0, 0), [], max_children=7)
        worker = build_context(_agent("w", 0, 0, "worker"), [])

        assert orchestrator.context.capabilities.can_spawn is True
        assert orchestrator.context.capabilities.max_children == 7
        assert worker.context.capabilities.can_spawn is False
        assert worker.context.capabilities.can_message is True

    def test_no_task_serializes_as_null(self):
        context = build_context(_agent("o", 0, 0), [])

        data = json.loads(context.to_json())

        assert data["jsonrpc"] == "2.0"
        assert data["context"]["task"] is None
        assert data["context"]["parent"] is None
        assert data["context"]["self"]["agentId"] == "o"
        assert data["context"]["capabilities"]["canSpawn"] is True

    def test_connection_serializes_from_key(self):
        me = _agent("orch-1", 0, 0, connections=["boss"])

        data = json.loads(build_context(me, [me, _agent("boss", 1, 0)]).to_json())

        assert data["context"]["grid"]["connections"] == [
            {"from": "boss", "to": "orch-1", "type": "parent-child"}
        ]

    def test_context_is_immutable(self):
        context = build_context(_agent("o", 0, 0), [])

        with pytest.raises(Exception):
            context.jsonrpc = "1.0"  # type: ignore[misc]


@pytest.mark.unit
class TestContextFiles:
    def test_path_is_deterministic(self, tmp_path):
        assert get_context_path("agent-1", tmp_path) == get_context_path("agent-1", tmp_path)
        assert get_context_path("agent-1", tmp_path) != get_context_path("agent-2", tmp_path)

    def test_write_then_read(self, tmp_path):
        me = _agent("worker-1", 1, 0, "worker")
        context = build_context(
            me, [me, _agent("orch-1", 0, 0)], task_assignment=TaskAssignment(task="t", assigned_by="orch-1")
        )

        path = write_context_file("worker-1", context, tmp_path)
        loaded = read_context_file(path)

        assert isinstance(loaded, AgentContext)
        assert loaded == context

    def test_cleanup_is_idempotent(self, tmp_path):
        path = write_context_file("o", build_context(_agent("o", 0, 0), []), tmp_path)

        cleanup_context_file("o", tmp_path)
        cleanup_context_file("o", tmp_path)

        assert not get_context_path("o", tmp_path).exists()
        assert path == str(get_context_path("o", tmp_path))

    def test_task_ids_are_unique(self):
        assert len({new_task_id() for _ in range(20)}) == 20
