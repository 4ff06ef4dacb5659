"""Shared fixtures for agent-browse tests."""

import io
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_browse.config import Settings
from agent_browse.display import ResultFormatter
from agent_browse.lifecycle import SessionManager
from agent_browse.security import Blocklist


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temp directory with all waits shrunk to zero."""
    return Settings(
        root=tmp_path,
        chrome_path="/usr/bin/google-chrome",
        source_profile=tmp_path / "source-profile",
        launch_attempts=3,
        launch_interval=0,
        ready_state_attempts=3,
        ready_state_interval=0,
        settle_delay=0,
        graceful_exit_wait=0,
        terminate_grace=0,
    )


@pytest.fixture
def blocklist() -> Blocklist:
    """Blocklist with the default entries."""
    return Blocklist()


@pytest.fixture
def fake_engine() -> MagicMock:
    """AutomationEngine stand-in with async methods."""
    engine = MagicMock()
    for name in (
        "attach",
        "detach",
        "close_browser",
        "set_viewport",
        "enable_downloads",
        "evaluate",
        "navigate",
        "act",
        "extract",
        "observe",
        "page_target_id",
    ):
        setattr(engine, name, AsyncMock())
    engine.evaluate.return_value = "complete"
    engine.page_target_id.return_value = "page-target-1"
    engine.screenshot = AsyncMock(side_effect=lambda path: path)
    return engine


@pytest.fixture
def manager(settings: Settings, fake_engine: MagicMock) -> SessionManager:
    """SessionManager whose engines are all the same fake."""
    return SessionManager(settings, engine_factory=lambda: fake_engine)


@pytest.fixture
def formatter_streams() -> tuple[ResultFormatter, io.StringIO, io.StringIO]:
    """ResultFormatter writing into captured stdout/stderr buffers."""
    out, err = io.StringIO(), io.StringIO()
    return ResultFormatter(stdout=out, stderr=err), out, err
