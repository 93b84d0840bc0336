"""Pytest configuration for hivegrid tests."""

import logging
from pathlib import Path

import pytest
import structlog
from git import Repo


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Route structlog through a no-op logger so tests stay quiet and fast."""
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.dev.ConsoleRenderer(colors=False)],
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


def init_repo(path: Path) -> Repo:
    """Create a repository on `main` with one commit."""
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path, initial_branch="main")
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Hivegrid Test")
        cw.set_value("user", "email", "test@hivegrid.local")
        cw.set_value("commit", "gpgsign", "false")
    (path / "README.md").write_text("# project\n", encoding="utf-8")
    repo.git.add("README.md")
    repo.git.commit("-m", "initial")
    return repo


def commit_file(repo_dir: Path, name: str, content: str, message: str | None = None) -> None:
    """Write a file in `repo_dir` (repo or worktree) and commit it."""
    target = repo_dir / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    repo = Repo(repo_dir)
    repo.git.add(name)
    repo.git.commit("-m", message or f"update {name}")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo_dir = tmp_path / "project"
    init_repo(repo_dir)
    return repo_dir


@pytest.fixture
def runtime_dir(tmp_path: Path) -> Path:
    """Directory for context and tool-config files."""
    path = tmp_path / "runtime"
    path.mkdir()
    return path


@pytest.fixture
def commit():
    return commit_file


@pytest.fixture
def make_repo():
    return init_repo


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
