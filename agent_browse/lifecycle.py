"""Discovers, launches, attaches to and shuts down the browser.

A browser started by one CLI invocation is reused by the next through the
persisted CDP port, so every invocation probes before it spawns and only
treats a browser as its own when it actually launched it.
"""

import asyncio
import logging
import subprocess
from collections.abc import Callable
from typing import Any

import httpx
import psutil

from agent_browse.config import Settings
from agent_browse.engine import AutomationEngine
from agent_browse.persistence import (
    BrowserNotFoundError,
    PidStore,
    PortStore,
    default_source_profile,
    find_local_chrome,
    prepare_profile,
)
from agent_browse.session import Session, SessionState, ShutdownReport

logger = logging.getLogger(__name__)

BROWSER_PROCESS_NAMES = ("chrome", "chromium")


class LaunchTimeoutError(RuntimeError):
    """The launched browser never answered on its CDP port."""


async def probe_cdp(port: int, timeout: float = 2.0) -> dict[str, Any] | None:
    """Query the CDP version endpoint on localhost.

    Returns:
        The version payload (including ``webSocketDebuggerUrl``), or None if nothing answered
    """
    url = f"http://127.0.0.1:{port}/json/version"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
    except httpx.HTTPError:
        return None

    if response.status_code != 200:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def is_browser_process(pid: int) -> bool:
    """Check that ``pid`` belongs to a Chrome/Chromium process, not a recycled PID."""
    try:
        name = psutil.Process(pid).name().lower()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False
    return any(browser in name for browser in BROWSER_PROCESS_NAMES)


class SessionManager:
    """Owns the single browser session of a CLI process.

    ``UNINITIALIZED -> CONNECTING -> READY -> CLOSING -> CLOSED``
    """

    def __init__(
        self,
        settings: Settings,
        engine_factory: Callable[[], AutomationEngine] | None = None,
    ):
        """Initialise the manager.

        Args:
            settings: Paths and timing constants
            engine_factory: Builds an unattached engine; defaults to a credential-less AutomationEngine
        """
        self.settings = settings
        self.engine_factory = engine_factory or (lambda: AutomationEngine(downloads_dir=settings.downloads_dir))
        self.ports = PortStore(settings.port_file)
        self.pids = PidStore(settings.pid_file)
        self.state = SessionState.UNINITIALIZED
        self.session: Session | None = None
        self._process: subprocess.Popen | None = None

    # --- Startup ---

    def _spawn(self, chrome_path: str, port: int) -> subprocess.Popen:
        """Start the browser detached from our process group so it outlives this invocation."""
        width, height = self.settings.viewport_width, self.settings.viewport_height
        command = [
            chrome_path,
            f"--remote-debugging-port={port}",
            f"--user-data-dir={self.settings.profile_dir}",
            "--window-position=0,0",
            f"--window-size={width},{height}",
        ]
        logger.debug("Launching browser: %s", " ".join(command))
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self.pids.write(process.pid)
        return process

    async def _wait_for_cdp(self, port: int) -> dict[str, Any] | None:
        for _ in range(self.settings.launch_attempts):
            version = await probe_cdp(port, timeout=self.settings.probe_timeout)
            if version is not None:
                return version
            await asyncio.sleep(self.settings.launch_interval)
        return None

    async def _wait_for_page(self, engine: AutomationEngine) -> None:
        for _ in range(self.settings.ready_state_attempts):
            try:
                await engine.evaluate("document.readyState")
                return
            except Exception as e:
                # Early in a navigation the page has no execution context yet
                logger.debug("Page not ready yet: %s", e)
                await asyncio.sleep(self.settings.ready_state_interval)
        logger.warning("Page did not report a ready state; continuing anyway")

    async def ensure_ready(self) -> Session:
        """Return the live session, reusing or launching a browser as needed.

        Raises:
            BrowserNotFoundError: If no local browser executable exists
            LaunchTimeoutError: If a launched browser never became reachable
        """
        if self.session is not None:
            return self.session

        self.state = SessionState.CONNECTING
        chrome_path = find_local_chrome(self.settings.chrome_path)
        if not chrome_path:
            self.state = SessionState.UNINITIALIZED
            raise BrowserNotFoundError("Could not find Chrome installation")

        prepare_profile(self.settings.profile_dir, self.settings.source_profile or default_source_profile())
        port = self.ports.resolve()

        owns_process = False
        version = await probe_cdp(port, timeout=self.settings.probe_timeout)
        if version is not None:
            logger.info("Reusing existing browser on port %d", port)
        else:
            self._process = self._spawn(chrome_path, port)
            version = await self._wait_for_cdp(port)
            if version is None:
                report = await self.shutdown()
                logger.debug("Cleanup after failed launch: %s", report)
                raise LaunchTimeoutError("Chrome failed to start")
            owns_process = True

        engine = self.engine_factory()
        ws_url = version.get("webSocketDebuggerUrl")
        try:
            if not ws_url:
                raise LaunchTimeoutError(f"Browser on port {port} did not report a WebSocket debugger URL")
            await engine.attach(ws_url)
            target_id = await engine.page_target_id()
        except Exception:
            if owns_process:
                # A browser we just spawned must not outlive a failed attach
                report = await self.shutdown()
                logger.debug("Cleanup after failed attach: %s", report)
            else:
                self._process = None
                self.state = SessionState.UNINITIALIZED
            raise

        self.session = Session(
            port=port,
            ws_url=ws_url,
            engine=engine,
            owns_process=owns_process,
            process=self._process if owns_process else None,
            target_id=target_id,
        )

        await engine.set_viewport(self.settings.viewport_width, self.settings.viewport_height)
        await self._wait_for_page(engine)
        await engine.enable_downloads(self.settings.downloads_dir)

        self.state = SessionState.READY
        return self.session

    async def release(self) -> None:
        """Detach from the browser without stopping it, so the next invocation can reuse it."""
        if self.session is None:
            return
        session = self.session
        self.session = None
        self._process = None
        self.state = SessionState.UNINITIALIZED
        try:
            await session.engine.detach()
        except Exception as e:
            logger.warning("Error detaching from browser: %s", e)

    # --- Shutdown ---

    async def _close_engine(self, report: ShutdownReport) -> None:
        if self.session is None:
            return
        try:
            await self.session.engine.detach()
            report.engine_closed = True
        except Exception as e:
            report.warn(f"Error closing automation engine: {e}")

    async def _terminate_own_process(self, report: ShutdownReport) -> None:
        process = self._process
        if process is None:
            return
        try:
            process.terminate()
            report.process_terminated = True
            await asyncio.sleep(self.settings.terminate_grace)
            if process.poll() is None:
                process.kill()
                report.process_killed = True
        except Exception as e:
            report.warn(f"Error killing Chrome: {e}")

    async def _graceful_cdp_exit(self, port: int, report: ShutdownReport) -> None:
        """Ask whatever browser listens on ``port`` to exit, force-killing it by PID as a last resort."""
        version = await probe_cdp(port, timeout=self.settings.probe_timeout)
        if version is None:
            return

        ws_url = version.get("webSocketDebuggerUrl")
        if ws_url:
            try:
                engine = self.engine_factory()
                await engine.attach(ws_url)
                await engine.close_browser()
            except Exception as e:
                report.warn(f"Error during graceful browser exit: {e}")
            await asyncio.sleep(self.settings.graceful_exit_wait)

        if await probe_cdp(port, timeout=self.settings.reprobe_timeout) is None:
            report.graceful_cdp_exit = True
            return

        record = self.pids.read()
        if record is None:
            report.warn(f"Browser still running on port {port} and no PID record to kill it")
            return
        if not is_browser_process(record.pid):
            report.warn(f"PID {record.pid} is not a browser process; not killing it")
            return
        try:
            psutil.Process(record.pid).kill()
            report.pid_killed = record.pid
        except psutil.Error as e:
            report.warn(f"Error killing browser PID {record.pid}: {e}")

    async def shutdown(self) -> ShutdownReport:
        """Close the browser by every available means. Never raises.

        The persistent profile directory is left untouched.
        """
        report = ShutdownReport()
        self.state = SessionState.CLOSING
        port = self.session.port if self.session else self.ports.read()

        try:
            await self._close_engine(report)
            self.session = None

            await self._terminate_own_process(report)
            self._process = None

            # Covers browsers launched by an earlier invocation
            if port is not None:
                await self._graceful_cdp_exit(port, report)
        except Exception as e:
            report.warn(f"Unexpected shutdown error: {e}")
        finally:
            try:
                report.pid_file_removed = self.pids.clear()
            except OSError as e:
                report.warn(f"Could not remove PID file: {e}")
            self.state = SessionState.CLOSED

        for warning in report.warnings:
            logger.warning(warning)
        return report
