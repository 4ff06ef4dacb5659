"""Maps CLI verbs to blocklist-gated, session-backed operations."""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, create_model

from agent_browse.config import EnvironmentFailure, Settings
from agent_browse.lifecycle import SessionManager
from agent_browse.persistence import remove_profile
from agent_browse.security import Blocklist

logger = logging.getLogger(__name__)

COMMANDS = ("navigate", "act", "extract", "observe", "screenshot", "close", "blocklist", "cleanup-profile")

USAGE = {
    "navigate": "Usage: browser navigate <url>",
    "act": 'Usage: browser act "<action>"',
    "extract": 'Usage: browser extract "<instruction>" [\'{"field": "string|number|boolean"}\']',
    "observe": 'Usage: browser observe "<query>"',
}

SCHEMA_TYPES: dict[str, type] = {
    "string": str,
    "number": float,
    "boolean": bool,
}

# Targets that already name their scheme and must not get https:// prepended
_EXPLICIT_SCHEMES = ("about:", "data:", "file:", "chrome:", "javascript:")


class UsageError(ValueError):
    """The command line was malformed; raised before any browser work."""


@dataclass
class CommandResult:
    """Uniform result of every command."""

    success: bool
    message: str | None = None
    error: str | None = None
    screenshot: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        for key in ("message", "error", "screenshot"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


def normalize_url(url: str) -> str:
    """Prefix scheme-less targets such as ``example.com/page`` with ``https://``."""
    url = url.strip()
    if "://" in url or url.lower().startswith(_EXPLICIT_SCHEMES):
        return url
    return f"https://{url}"


def _field_name(key: str, taken: set[str]) -> str:
    """Turn an arbitrary schema key into a valid, unique pydantic field name."""
    name = re.sub(r"\W", "_", key).lstrip("_") or "field"
    if name[0].isdigit():
        name = f"field_{name}"
    base, counter = name, 2
    while name in taken:
        name = f"{base}_{counter}"
        counter += 1
    return name


def build_extract_schema(schema: dict[str, Any] | None) -> type[BaseModel] | None:
    """Build a pydantic model from a flat ``{"field": "string|number|boolean"}`` mapping.

    Fields with any other type are dropped. If no field survives, no model is built.

    Args:
        schema: Parsed schema JSON, or None

    Returns:
        Model class whose aliases are the original keys, or None
    """
    if not schema:
        return None

    fields: dict[str, Any] = {}
    for key, type_name in schema.items():
        python_type = SCHEMA_TYPES.get(type_name) if isinstance(type_name, str) else None
        if python_type is None:
            logger.debug("Ignoring schema field %r with unsupported type %r", key, type_name)
            continue
        fields[_field_name(str(key), set(fields))] = (python_type, Field(alias=str(key)))

    if not fields:
        return None
    return create_model(
        "ExtractedData",
        __config__=ConfigDict(populate_by_name=True),
        **fields,
    )


def parse_schema_argument(raw: str) -> dict[str, Any] | None:
    """Parse the optional schema argument of ``extract``.

    ``null`` and empty JSON values mean no schema.
    """
    try:
        schema = json.loads(raw)
    except json.JSONDecodeError as e:
        raise UsageError(f"Invalid schema JSON: {e}") from e
    if not schema:
        return None
    if not isinstance(schema, dict):
        raise UsageError('Schema must be a JSON object such as {"price": "number"}')
    return schema


class CommandDispatcher:
    """Validates arguments, applies the blocklist, and runs commands against the session."""

    def __init__(self, manager: SessionManager, blocklist: Blocklist, settings: Settings | None = None):
        """Initialise the dispatcher.

        Args:
            manager: Session lifecycle manager
            blocklist: Domains that navigate and act refuse to touch
            settings: Paths and timing; defaults to the manager's settings
        """
        self.manager = manager
        self.blocklist = blocklist
        self.settings = settings or manager.settings
        self._handlers: dict[str, Callable[[list[str]], Awaitable[CommandResult]]] = {
            "navigate": self._navigate,
            "act": self._act,
            "extract": self._extract,
            "observe": self._observe,
            "screenshot": self._screenshot,
            "close": self._close,
            "blocklist": self._blocklist,
            "cleanup-profile": self._cleanup_profile,
        }

    async def dispatch(self, argv: list[str]) -> CommandResult:
        """Run one command line.

        Raises:
            UsageError: For unknown commands or missing arguments
            EnvironmentFailure: If the browser or credentials are unavailable
        """
        if not argv:
            raise UsageError(f"No command given\nAvailable: {', '.join(COMMANDS)}")

        command, args = argv[0], argv[1:]
        handler = self._handlers.get(command)
        if handler is None:
            raise UsageError(f"Unknown command: {command}\nAvailable: {', '.join(COMMANDS)}")
        return await handler(args)

    # --- Helpers ---

    def _require_args(self, command: str, args: list[str]) -> None:
        if not args:
            raise UsageError(USAGE[command])

    def _screenshot_path(self) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        return self.settings.screenshots_dir / f"screenshot-{timestamp}.png"

    async def _capture(self) -> str:
        session = await self.manager.ensure_ready()
        path = await session.engine.screenshot(self._screenshot_path())
        return str(path)

    async def _guarded(self, operation: Callable[[], Awaitable[CommandResult]]) -> CommandResult:
        """Turn operation failures into failed results; environment failures still propagate."""
        try:
            return await operation()
        except EnvironmentFailure:
            raise
        except Exception as e:
            logger.debug("Command failed", exc_info=True)
            return CommandResult(success=False, error=str(e) or type(e).__name__)

    # --- Commands ---

    async def _navigate(self, args: list[str]) -> CommandResult:
        self._require_args("navigate", args)
        url = normalize_url(args[0])

        blocked = self.blocklist.is_blocked(url)
        if blocked:
            return CommandResult(
                success=False, error=f'BLOCKED: Navigation to "{blocked}" is restricted by security policy.'
            )

        async def operation() -> CommandResult:
            session = await self.manager.ensure_ready()
            await session.engine.navigate(
                url,
                timeout=self.settings.navigation_timeout,
                fallback_timeout=self.settings.navigation_fallback_timeout,
            )
            # Let script-heavy pages render before the screenshot
            await asyncio.sleep(self.settings.settle_delay)
            return CommandResult(
                success=True, message=f"Successfully navigated to {url}", screenshot=await self._capture()
            )

        return await self._guarded(operation)

    async def _act(self, args: list[str]) -> CommandResult:
        self._require_args("act", args)
        action = " ".join(args)

        blocked = self.blocklist.is_action_blocked(action)
        if blocked:
            return CommandResult(success=False, error=f'BLOCKED: Action references restricted domain "{blocked}".')

        async def operation() -> CommandResult:
            session = await self.manager.ensure_ready()
            await session.engine.act(action)
            return CommandResult(
                success=True, message=f"Successfully performed action: {action}", screenshot=await self._capture()
            )

        return await self._guarded(operation)

    async def _extract(self, args: list[str]) -> CommandResult:
        self._require_args("extract", args)
        instruction = args[0]
        raw_schema = parse_schema_argument(args[1]) if len(args) > 1 and args[1] else None
        schema = build_extract_schema(raw_schema)

        async def operation() -> CommandResult:
            session = await self.manager.ensure_ready()
            result = await session.engine.extract(instruction, schema)
            return CommandResult(
                success=True,
                message=f"Successfully extracted data: {json.dumps(result)}",
                screenshot=await self._capture(),
            )

        return await self._guarded(operation)

    async def _observe(self, args: list[str]) -> CommandResult:
        self._require_args("observe", args)
        query = " ".join(args)

        async def operation() -> CommandResult:
            session = await self.manager.ensure_ready()
            actions = await session.engine.observe(query)
            return CommandResult(
                success=True,
                message=f"Successfully observed: {json.dumps(actions)}",
                screenshot=await self._capture(),
            )

        return await self._guarded(operation)

    async def _screenshot(self, _args: list[str]) -> CommandResult:
        async def operation() -> CommandResult:
            return CommandResult(success=True, screenshot=await self._capture())

        return await self._guarded(operation)

    async def _close(self, _args: list[str]) -> CommandResult:
        await self.manager.shutdown()
        self.manager.ports.clear()
        # The profile is kept so logged-in sessions survive
        return CommandResult(success=True, message="Browser closed (profile preserved)")

    async def _blocklist(self, args: list[str]) -> CommandResult:
        if args:
            url = normalize_url(args[0])
            blocked = self.blocklist.is_blocked(url)
            if blocked:
                return CommandResult(success=True, message=f'BLOCKED: "{blocked}"')
            return CommandResult(success=True, message=f"Allowed: {url}")

        return CommandResult(success=True, message=f"Blocked domains: {', '.join(self.blocklist.entries())}")

    async def _cleanup_profile(self, _args: list[str]) -> CommandResult:
        await self.manager.shutdown()
        self.manager.ports.clear()
        try:
            removed = remove_profile(self.settings.profile_dir)
        except OSError as e:
            return CommandResult(success=False, error=f"Failed to remove browser profile: {e}")

        if removed:
            return CommandResult(success=True, message="Browser closed and profile removed")
        return CommandResult(success=True, message="Browser closed (no profile to remove)")
