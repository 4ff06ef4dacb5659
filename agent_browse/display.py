"""JSON output for command results."""

import json
import sys
from typing import TextIO

from agent_browse.commands import CommandResult


class ResultFormatter:
    """Writes exactly one pretty-printed JSON object per invocation.

    Handled results go to stdout; top-level failures go to stderr.
    """

    def __init__(self, stdout: TextIO | None = None, stderr: TextIO | None = None):
        """Initialise the result formatter.

        Args:
            stdout: Stream for command results (defaults to sys.stdout at write time)
            stderr: Stream for top-level failures (defaults to sys.stderr at write time)
        """
        self._stdout = stdout
        self._stderr = stderr

    def show_result(self, result: CommandResult) -> None:
        """Output a command result as JSON to stdout."""
        print(json.dumps(result.to_dict(), indent=2), file=self._stdout or sys.stdout)

    def show_failure(self, error_message: str) -> None:
        """Output a top-level failure as JSON to stderr.

        Args:
            error_message: Message for the ``error`` field; never a traceback
        """
        data = {"success": False, "error": error_message}
        print(json.dumps(data, indent=2), file=self._stderr or sys.stderr)
