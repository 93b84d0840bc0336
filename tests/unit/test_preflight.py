"""Unit tests for startup preflight checks."""

from unittest.mock import patch

import pytest
from git.exc import GitCommandNotFound

from hivegrid.core.preflight import PreflightError, run_preflight


@pytest.mark.unit
class TestPreflight:
    def test_ok_with_git_and_cli(self):
        with (
            patch("hivegrid.core.preflight.Git.execute", return_value="git version 2.45.0"),
            patch("hivegrid.core.preflight.shutil.which", return_value="/usr/bin/claude"),
        ):
            report = run_preflight("claude")

        assert report.git_version == "2.45.0"
        assert report.agent_cli_path == "/usr/bin/claude"
        assert report.python_version

    def test_missing_cli_is_only_a_warning(self):
        with (
            patch("hivegrid.core.preflight.Git.execute", return_value="git version 2.45.0"),
            patch("hivegrid.core.preflight.shutil.which", return_value=None),
        ):
            report = run_preflight("claude")

        assert report.agent_cli_path is None

    def test_missing_git_is_fatal(self):
        with patch("hivegrid.core.preflight.Git.execute", side_effect=GitCommandNotFound("git", "not found")):
            with pytest.raises(PreflightError, match="git not found"):
                run_preflight("claude")
