"""In-process session state for one connected browser."""

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agent_browse.engine import AutomationEngine


class SessionState(Enum):
    """Lifecycle of the session within a single CLI process."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Session:
    """A browser this process is attached to.

    Only the port file and PID file outlive the process; everything here is
    rebuilt by the next invocation. ``target_id`` is the CDP target of the
    active page the engine was attached to.
    """

    port: int
    ws_url: str
    engine: "AutomationEngine"
    owns_process: bool = False
    process: subprocess.Popen | None = None
    target_id: str | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


@dataclass
class ShutdownReport:
    """Outcome of a best-effort shutdown.

    Shutdown never raises; each step that failed is recorded as a warning
    instead so callers and tests can see partial failures.
    """

    engine_closed: bool = False
    process_terminated: bool = False
    process_killed: bool = False
    graceful_cdp_exit: bool = False
    pid_killed: int | None = None
    pid_file_removed: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings

    def warn(self, message: str) -> None:
        self.warnings.append(message)
