"""Subprocess plumbing for the gt, bd and git CLIs."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from .errors import CommandError, CommandTimeout

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs CLI commands from the town root with a hard deadline.

    Tests swap this for a MagicMock whose ``run`` returns canned stdout.
    """

    def __init__(self, town_root: Path | str):
        self.town_root = Path(town_root)

    def run(self, args: list[str], timeout: float, cwd: Path | str | None = None) -> str:
        """Run a command and return its stdout.

        Args:
            args: Full argv, e.g. ``["gt", "status", "--json"]``
            timeout: Seconds before the process is killed
            cwd: Working directory (defaults to the town root)

        Returns:
            The command's stdout

        Raises:
            CommandTimeout: The deadline passed
            CommandError: The command could not start or exited non-zero
        """
        if not args:
            raise CommandError("no command specified")
        try:
            result = subprocess.run(
                args,
                cwd=cwd or self.town_root,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(
                f"{args[0]} timed out after {timeout:g}s", args=args, timeout=timeout
            ) from e
        except OSError as e:
            raise CommandError(f"{args[0]}: {e}", args=args) from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            message = f"{' '.join(args[:3])}: exit status {result.returncode}"
            if stderr:
                message += f": {stderr}"
            raise CommandError(message, args=args, stderr=stderr)
        return result.stdout

    def run_json(self, args: list[str], timeout: float) -> Any:
        """Run a command and decode its JSON stdout (None for empty or null)."""
        out = self.run(args, timeout).strip()
        if not out or out == "null":
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise CommandError(f"parsing {args[0]} output: {e}", args=args) from e
