"""Command-line entry point: one command per invocation, one JSON object out."""

import asyncio
import contextlib
import logging
import signal
import sys

from rich.console import Console
from rich.logging import RichHandler

from agent_browse.commands import CommandDispatcher, UsageError
from agent_browse.config import MissingCredentialError, Settings, load_credential
from agent_browse.display import ResultFormatter
from agent_browse.engine import AutomationEngine
from agent_browse.lifecycle import SessionManager
from agent_browse.security import Blocklist

logger = logging.getLogger("agent_browse")

NOISY_LOGGERS = ("bubus", "browser_use", "cdp_use", "httpx", "httpcore")


def configure_logging(level: str = "WARNING") -> None:
    """Send diagnostics to stderr so stdout only ever carries the JSON result."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.WARNING

    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=False)
    logging.basicConfig(level=numeric_level, format="%(message)s", handlers=[handler], force=True)

    # Suppress noisy tracebacks from browser-use's internal event bus and watchdogs
    logging.getLogger("bubus").setLevel(logging.CRITICAL)
    for name in NOISY_LOGGERS[1:]:
        logging.getLogger(name).setLevel(max(logging.WARNING, numeric_level))


def _install_signal_handlers(task: asyncio.Task) -> list[signal.Signals]:
    """Route SIGINT/SIGTERM to cancelling ``task`` so the browser is shut down, not orphaned."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, task.cancel)
            installed.append(sig)
    return installed


async def run_cli(
    argv: list[str],
    settings: Settings | None = None,
    formatter: ResultFormatter | None = None,
    manager: SessionManager | None = None,
) -> int:
    """Run one command line.

    Args:
        argv: Arguments after the program name
        settings: Resolved settings; read from the environment if omitted
        formatter: Output writer
        manager: Session manager; built from settings if omitted

    Returns:
        Process exit code
    """
    settings = settings or Settings.from_env()
    formatter = formatter or ResultFormatter()

    try:
        credential = load_credential(settings)
    except MissingCredentialError as e:
        formatter.show_failure(str(e))
        return 1

    blocklist = Blocklist(extra=settings.extra_blocked_domains)
    if manager is None:
        manager = SessionManager(
            settings,
            engine_factory=lambda: AutomationEngine(
                credential=credential, downloads_dir=settings.downloads_dir, blocklist=blocklist
            ),
        )
    dispatcher = CommandDispatcher(manager, blocklist, settings)

    task = asyncio.current_task()
    installed = _install_signal_handlers(task) if task else []
    try:
        result = await dispatcher.dispatch(argv)
    except asyncio.CancelledError:
        logger.warning("Interrupted; shutting down browser")
        await manager.shutdown()
        return 0
    except UsageError as e:
        formatter.show_failure(str(e))
        return 1
    except Exception as e:
        logger.debug("Unhandled failure", exc_info=True)
        await manager.shutdown()
        formatter.show_failure(str(e) or type(e).__name__)
        return 1
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    await manager.release()
    formatter.show_result(result)
    return 0


def main() -> None:
    """Entry point for the ``browse`` console script."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    try:
        exit_code = asyncio.run(run_cli(sys.argv[1:], settings=settings))
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)
