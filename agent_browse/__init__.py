"""Security-gated browser automation CLI package."""

from agent_browse.cli import run_cli
from agent_browse.commands import CommandDispatcher, CommandResult
from agent_browse.lifecycle import SessionManager
from agent_browse.security import Blocklist
from agent_browse.session import Session, ShutdownReport

__all__ = ["Blocklist", "CommandDispatcher", "CommandResult", "Session", "SessionManager", "ShutdownReport", "run_cli"]
