"""Unit tests for the hub daemon entry point."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hivegrid import daemon
from hivegrid.core.preflight import PreflightError


@pytest.fixture
def mock_hub():
    hub = MagicMock()
    hub.host = "127.0.0.1"
    hub.port = 3001
    hub.start = AsyncMock()
    hub.stop = AsyncMock()
    with (
        patch("hivegrid.daemon.HubServer", return_value=hub),
        patch("hivegrid.daemon.setup_logging"),
        patch("hivegrid.daemon.signal.signal"),
    ):
        yield hub


@pytest.mark.unit
class TestDaemonMain:
    @pytest.mark.asyncio
    async def test_preflight_failure_exits_1(self, mock_hub):
        with patch("hivegrid.daemon.run_preflight", side_effect=PreflightError("git not found")):
            with pytest.raises(SystemExit) as excinfo:
                await daemon.main()

        assert excinfo.value.code == 1
        mock_hub.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_port_in_use_exits_1_and_stops_hub(self, mock_hub):
        mock_hub.start.side_effect = OSError("Address already in use")
        with patch("hivegrid.daemon.run_preflight"):
            with pytest.raises(SystemExit) as excinfo:
                await daemon.main()

        assert excinfo.value.code == 1
        mock_hub.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_signal_triggers_clean_shutdown(self, mock_hub):
        handlers = {}

        def capture(signum, handler):
            handlers[signum] = handler

        async def start():
            # Deliver SIGTERM as soon as the hub is up
            handlers[daemon.signal.SIGTERM](daemon.signal.SIGTERM, None)

        mock_hub.start.side_effect = start
        with (
            patch("hivegrid.daemon.run_preflight"),
            patch("hivegrid.daemon.signal.signal", side_effect=capture),
        ):
            await daemon.main()

        mock_hub.stop.assert_awaited_once()
