"""On-disk state shared between CLI invocations: CDP port, browser PID and profile.

Separate invocations coordinate only through these files. Every writer is
check-then-write and the last writer wins; commands are expected to arrive
one at a time, so no file locks are taken.
"""

import json
import logging
import os
import platform
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from agent_browse.config import EnvironmentFailure
from agent_browse.security import PROFILE_EXCLUDED_FILES, random_cdp_port

logger = logging.getLogger(__name__)

# Chrome's single-instance locks point at the source browser and must not follow the copy
PROFILE_LOCK_FILES = frozenset({"SingletonLock", "SingletonSocket", "SingletonCookie"})

CHROME_EXECUTABLE_NAMES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")


class BrowserNotFoundError(EnvironmentFailure):
    """No local Chrome/Chromium executable could be found."""


class PortStore:
    """Persisted CDP port number."""

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> int | None:
        """Return the saved port, or None if missing or unparseable."""
        try:
            port = int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
        return port if port > 0 else None

    def resolve(self) -> int:
        """Return the saved port, choosing and saving a random one if needed."""
        port = self.read()
        if port is not None:
            return port

        port = random_cdp_port()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(port), encoding="utf-8")
        logger.debug("Persisted new CDP port %d to %s", port, self.path)
        return port

    def clear(self) -> bool:
        """Delete the port file. Returns True if it existed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


@dataclass(frozen=True)
class PidRecord:
    """A browser process launched by this tool."""

    pid: int
    start_time: int  # epoch milliseconds


class PidStore:
    """Persisted ``{"pid": ..., "startTime": ...}`` record."""

    def __init__(self, path: Path):
        self.path = path

    def write(self, pid: int) -> PidRecord:
        record = PidRecord(pid=pid, start_time=int(time.time() * 1000))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"pid": record.pid, "startTime": record.start_time}), encoding="utf-8")
        return record

    def read(self) -> PidRecord | None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return PidRecord(pid=int(data["pid"]), start_time=int(data.get("startTime", 0)))
        except (OSError, ValueError, TypeError, KeyError):
            return None

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


def default_source_profile() -> Path | None:
    """Return the platform's default Chrome user-data directory, if it exists."""
    system = platform.system()
    home = Path.home()

    if system == "Darwin":
        candidate = home / "Library" / "Application Support" / "Google" / "Chrome"
    elif system == "Windows":
        local_app_data = os.getenv("LOCALAPPDATA")
        if not local_app_data:
            return None
        candidate = Path(local_app_data) / "Google" / "Chrome" / "User Data"
    else:
        candidate = home / ".config" / "google-chrome"

    return candidate if candidate.is_dir() else None


def _ignore_sensitive(_directory: str, names: list[str]) -> set[str]:
    """copytree ignore callback dropping credential stores and profile locks."""
    return {name for name in names if name in PROFILE_EXCLUDED_FILES or name in PROFILE_LOCK_FILES}


def prepare_profile(profile_dir: Path, source_dir: Path | None) -> bool:
    """Create the persistent profile by copying the user's real profile once.

    If ``profile_dir`` already exists this is a no-op: the copy diverges from the
    source permanently, and refreshing it would invalidate its session cookies.
    Saved passwords and autofill stores are never copied.

    Args:
        profile_dir: Persistent profile directory to create
        source_dir: User's browser profile to copy, or None to start empty

    Returns:
        True if a new profile directory was created
    """
    if profile_dir.exists():
        return False

    if source_dir is None or not source_dir.is_dir():
        profile_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Created empty browser profile at %s", profile_dir)
        return True

    profile_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copytree(
            source_dir,
            profile_dir,
            symlinks=True,
            ignore=_ignore_sensitive,
            ignore_dangling_symlinks=True,
        )
    except FileExistsError:
        # Another invocation created it first
        return False
    except shutil.Error as e:
        # Files held open by a running browser fail individually; the rest of the copy is usable
        logger.warning("Browser profile copied with %d unreadable file(s)", len(e.args[0]) if e.args else 0)

    logger.info("Copied browser profile from %s to %s", source_dir, profile_dir)
    return True


def remove_profile(profile_dir: Path) -> bool:
    """Delete the persistent profile directory.

    Returns:
        True if a profile existed and was removed
    """
    if not profile_dir.exists():
        return False
    shutil.rmtree(profile_dir)
    return True


def find_local_chrome(explicit: str | None = None) -> str | None:
    """Locate a local Chrome or Chromium executable.

    Args:
        explicit: Path from configuration, checked first

    Returns:
        Executable path, or None if nothing was found
    """
    if explicit:
        if Path(explicit).is_file():
            return explicit
        found = shutil.which(explicit)
        if found:
            return found
        logger.warning("Configured browser %s does not exist", explicit)

    system = platform.system()
    candidates: list[Path] = []
    if system == "Darwin":
        candidates = [
            Path("/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"),
            Path("/Applications/Chromium.app/Contents/MacOS/Chromium"),
            Path.home() / "Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        ]
    elif system == "Windows":
        for env_var in ("PROGRAMFILES", "PROGRAMFILES(X86)", "LOCALAPPDATA"):
            base = os.getenv(env_var)
            if base:
                candidates.append(Path(base) / "Google" / "Chrome" / "Application" / "chrome.exe")
    else:
        candidates = [
            Path("/usr/bin/google-chrome"),
            Path("/usr/bin/google-chrome-stable"),
            Path("/usr/bin/chromium"),
            Path("/usr/bin/chromium-browser"),
            Path("/snap/bin/chromium"),
        ]

    for candidate in candidates:
        if candidate.is_file():
            return str(candidate)

    for name in CHROME_EXECUTABLE_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None
