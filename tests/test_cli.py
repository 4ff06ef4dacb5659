"""Tests for the CLI entry point: exit codes and output streams."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_browse.cli import configure_logging, main, run_cli
from agent_browse.config import Settings
from agent_browse.lifecycle import SessionManager
from agent_browse.persistence import BrowserNotFoundError
from agent_browse.session import Session, ShutdownReport


@pytest.fixture(autouse=True)
def credential(monkeypatch: pytest.MonkeyPatch) -> None:
    """Every CLI test has an API key unless it removes it."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")


@pytest.fixture
def mock_manager(settings: Settings, fake_engine: MagicMock) -> MagicMock:
    manager = MagicMock(spec=SessionManager)
    manager.settings = settings
    manager.ports = MagicMock()
    manager.ensure_ready = AsyncMock(return_value=Session(port=23456, ws_url="ws://x", engine=fake_engine))
    manager.shutdown = AsyncMock(return_value=ShutdownReport())
    manager.release = AsyncMock()
    return manager


def _run(argv, settings, formatter, manager) -> int:
    return asyncio.run(run_cli(argv, settings=settings, formatter=formatter, manager=manager))


def test_successful_command_exits_zero(settings, formatter_streams, mock_manager) -> None:
    """A handled success prints JSON to stdout and releases the session."""
    formatter, out, err = formatter_streams
    code = _run(["navigate", "https://example.com"], settings, formatter, mock_manager)

    assert code == 0
    payload = json.loads(out.getvalue())
    assert payload["success"] is True
    assert payload["message"] == "Successfully navigated to https://example.com"
    assert err.getvalue() == ""
    mock_manager.release.assert_awaited_once()
    mock_manager.shutdown.assert_not_called()


def test_blocked_navigation_exits_zero(settings, formatter_streams, mock_manager) -> None:
    """A blocked domain is a handled failure: stdout, exit 0."""
    formatter, out, _err = formatter_streams
    code = _run(["navigate", "https://chase.com"], settings, formatter, mock_manager)

    assert code == 0
    assert json.loads(out.getvalue()) == {
        "success": False,
        "error": 'BLOCKED: Navigation to "chase.com" is restricted by security policy.',
    }
    mock_manager.ensure_ready.assert_not_called()


def test_unknown_command_exits_one(settings, formatter_streams, mock_manager) -> None:
    """Unknown commands go to stderr, naming the command, with no shutdown."""
    formatter, out, err = formatter_streams
    code = _run(["fly"], settings, formatter, mock_manager)

    assert code == 1
    assert out.getvalue() == ""
    payload = json.loads(err.getvalue())
    assert payload["success"] is False
    assert "Unknown command: fly" in payload["error"]
    mock_manager.shutdown.assert_not_called()


def test_missing_arguments_exit_one(settings, formatter_streams, mock_manager) -> None:
    """act without an instruction is a usage error."""
    formatter, _out, err = formatter_streams
    assert _run(["act"], settings, formatter, mock_manager) == 1
    assert "Usage: browser act" in json.loads(err.getvalue())["error"]
    mock_manager.ensure_ready.assert_not_called()


def test_missing_credential_exits_one(settings, formatter_streams, mock_manager, monkeypatch) -> None:
    """Without any API key nothing runs."""
    monkeypatch.delenv("ANTHROPIC_API_KEY")
    monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
    monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
    formatter, _out, err = formatter_streams

    assert _run(["screenshot"], settings, formatter, mock_manager) == 1
    assert "ANTHROPIC_API_KEY" in json.loads(err.getvalue())["error"]
    mock_manager.ensure_ready.assert_not_called()


def test_environment_failure_shuts_down_and_exits_one(settings, formatter_streams, mock_manager) -> None:
    """A missing browser is fatal: best-effort shutdown, stderr JSON, exit 1."""
    formatter, out, err = formatter_streams
    mock_manager.ensure_ready.side_effect = BrowserNotFoundError("Could not find Chrome installation")

    assert _run(["screenshot"], settings, formatter, mock_manager) == 1
    assert json.loads(err.getvalue()) == {"success": False, "error": "Could not find Chrome installation"}
    assert out.getvalue() == ""
    mock_manager.shutdown.assert_awaited_once()


def test_cancellation_shuts_down_and_exits_zero(settings, formatter_streams, mock_manager) -> None:
    """An interrupt during a command closes the browser and exits cleanly."""
    formatter, out, _err = formatter_streams
    mock_manager.ensure_ready.side_effect = asyncio.CancelledError()

    assert _run(["screenshot"], settings, formatter, mock_manager) == 0
    mock_manager.shutdown.assert_awaited_once()
    assert out.getvalue() == ""


def test_close_command(settings, formatter_streams, mock_manager) -> None:
    """close reports that the profile is preserved."""
    formatter, out, _err = formatter_streams
    assert _run(["close"], settings, formatter, mock_manager) == 0
    assert json.loads(out.getvalue()) == {"success": True, "message": "Browser closed (profile preserved)"}


def test_main_exits_with_run_cli_code(monkeypatch, tmp_path) -> None:
    """main() resolves settings, runs the command and exits with its code."""
    monkeypatch.setattr("sys.argv", ["browse", "fly"])
    monkeypatch.setenv("AGENT_BROWSE_ROOT", str(tmp_path))
    monkeypatch.delenv("AGENT_BROWSE_LOG_LEVEL", raising=False)
    with (
        patch("agent_browse.cli.configure_logging") as mock_logging,
        patch("agent_browse.cli.run_cli", new=AsyncMock(return_value=1)) as mock_run,
        pytest.raises(SystemExit) as exc_info,
    ):
        main()
    assert exc_info.value.code == 1
    assert mock_run.await_args.args[0] == ["fly"]
    mock_logging.assert_called_once_with("WARNING")


def test_configure_logging_invalid_level_falls_back() -> None:
    """Unknown level names fall back to WARNING."""
    configure_logging("chatty")
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("bubus").level == logging.CRITICAL


def test_configure_logging_debug_keeps_libraries_quiet() -> None:
    """Library loggers never drop below WARNING."""
    configure_logging("debug")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("browser_use").level == logging.WARNING


def test_engines_share_the_command_blocklist(settings, formatter_streams) -> None:
    """Engines built for the session enforce the same blocklist, extras included."""
    settings.extra_blocked_domains = ["intranet.example"]
    formatter, _out, _err = formatter_streams
    with patch("agent_browse.cli.SessionManager") as manager_cls:
        manager_cls.return_value.release = AsyncMock()
        assert asyncio.run(run_cli(["blocklist"], settings=settings, formatter=formatter)) == 0

    engine = manager_cls.call_args.kwargs["engine_factory"]()
    assert engine.blocklist is not None
    assert "intranet.example" in engine.blocklist
    assert engine.blocklist.is_blocked("https://chase.com") == "chase.com"
