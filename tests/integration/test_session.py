"""Integration tests for PTY-backed terminal sessions (real processes)."""

import asyncio
from unittest.mock import MagicMock

import pytest

from hivegrid.core.session import SessionClosedError, TerminalSession
from hivegrid.core.session_manager import TerminalSessionManager
from hivegrid.hub_server import HubServer
from hivegrid.protocol import TerminalCreatePayload


async def _wait_for(predicate, timeout_s=3.0):
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.mark.integration
class TestTerminalSession:
    @pytest.mark.asyncio
    async def test_output_and_exit_code(self, tmp_path):
        session = TerminalSession("sh", ["-c", "echo hello; exit 3"], cwd=str(tmp_path))
        chunks: list[str] = []
        exits: list[int] = []
        session.on_data(chunks.append)
        session.on_exit(exits.append)

        await session.start()
        exit_code = await session.wait()

        assert exit_code == 3
        assert exits == [3]
        assert "hello" in "".join(chunks)
        assert "hello" in "".join(session.get_buffer())
        assert not session.is_active()

    @pytest.mark.asyncio
    async def test_write_reaches_process(self, tmp_path):
        session = TerminalSession("sh", ["-c", "read line; echo got:$line"], cwd=str(tmp_path))
        chunks: list[str] = []
        session.on_data(chunks.append)
        await session.start()

        session.write("ping\n")
        await session.wait()

        assert "got:ping" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_resize_is_visible_to_process(self, tmp_path):
        session = TerminalSession("sh", ["-c", "read _; stty size"], cwd=str(tmp_path), cols=80, rows=24)
        chunks: list[str] = []
        session.on_data(chunks.append)
        await session.start()

        session.resize(120, 40)
        session.write("\n")
        await session.wait()

        assert "40 120" in "".join(chunks)
        assert (session.cols, session.rows) == (120, 40)

    @pytest.mark.asyncio
    async def test_dispose_hangs_up_process(self, tmp_path):
        session = TerminalSession("sh", ["-c", "sleep 30"], cwd=str(tmp_path))
        exits: list[int] = []
        session.on_exit(exits.append)
        await session.start()

        session.dispose()
        await asyncio.wait_for(session.wait(), timeout=3)

        assert len(exits) == 1
        with pytest.raises(SessionClosedError):
            session.write("late\n")

    @pytest.mark.asyncio
    async def test_environment_is_passed(self, tmp_path):
        session = TerminalSession("sh", ["-c", "echo $HIVEGRID_AGENT_ID"], env={"HIVEGRID_AGENT_ID": "w-7"})
        chunks: list[str] = []
        session.on_data(chunks.append)
        await session.start()
        await session.wait()

        assert "w-7" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_missing_command_raises(self):
        session = TerminalSession("/nonexistent/hivegrid-agent-cli")

        with pytest.raises(OSError):
            await session.start()


@pytest.mark.integration
class TestSessionManager:
    @pytest.mark.asyncio
    async def test_sequential_ids(self, tmp_path):
        manager = TerminalSessionManager()

        first_id, first = await manager.create("sh", ["-c", "exit 0"], cwd=str(tmp_path))
        second_id, second = await manager.create("sh", ["-c", "exit 0"], cwd=str(tmp_path))
        await first.wait()
        await second.wait()

        assert (first_id, second_id) == ("term-001", "term-002")
        assert manager.session_ids() == ["term-001", "term-002"]

    @pytest.mark.asyncio
    async def test_failed_spawn_registers_nothing(self):
        manager = TerminalSessionManager()

        with pytest.raises(OSError):
            await manager.create("/nonexistent/hivegrid-agent-cli")

        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_dispose_all(self, tmp_path):
        manager = TerminalSessionManager()
        _, session = await manager.create("sh", ["-c", "sleep 30"], cwd=str(tmp_path))

        assert manager.dispose_all() == 1
        await asyncio.wait_for(session.wait(), timeout=3)
        assert manager.get("term-001") is None
        assert manager.dispose("term-001") is False

    def test_buffer_is_bounded(self):
        session = TerminalSession("sh", buffer_max_chunks=2)

        for i in range(5):
            session._emit(f"chunk-{i}".encode())

        assert session.get_buffer() == ["chunk-3", "chunk-4"]


@pytest.mark.integration
class TestHubSessionExit:
    @pytest.mark.asyncio
    async def test_exited_session_leaves_registry(self, tmp_path):
        hub = HubServer(default_project_dir=str(tmp_path), runtime_dir=tmp_path)
        hub._send = MagicMock()

        await hub._create_terminal(MagicMock(), "req-1", TerminalCreatePayload(shell="true", cwd=str(tmp_path)))
        session = hub.sessions.get("term-001")
        assert session is not None
        await session.wait()

        assert hub.sessions.session_ids() == []
        assert hub.list_sessions() == {"sessions": []}
