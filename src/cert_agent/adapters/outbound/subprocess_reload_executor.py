"""Reload executor backed by a subprocess.

Commands with shell operators run through `sh -c`; anything else is split
with shlex and executed directly. With no command configured the executor
writes a restart signal file that an orchestrator can watch.
"""

from __future__ import annotations

import shlex
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cert_agent.domain.entities.policy import ReloadSpec
from cert_agent.domain.errors import (
    ReloadExitError,
    ReloadSpawnError,
    ReloadTimeoutError,
)
from cert_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)

SHELL_OPERATORS = ("&&", "||", ";", "|", ">", "<", "$")
RESTART_SIGNAL_FILENAME = ".restart_needed"


def needs_shell(command: str) -> bool:
    """Whether a command uses shell syntax and must go through `sh -c`."""
    return any(op in command for op in SHELL_OPERATORS)


def build_argv(command: str) -> list[str]:
    if needs_shell(command):
        return ["sh", "-c", command]
    return shlex.split(command)


class SubprocessReloadExecutor:
    """Runs the configured reload command."""

    def __init__(self, signal_dir: Optional[Path] = None):
        """Initialize executor.

        Args:
            signal_dir: Directory for the restart signal file used when no
                reload command is configured. None disables the fallback.
        """
        self._signal_dir = Path(signal_dir) if signal_dir else None

    def execute(self, spec: ReloadSpec) -> None:
        command = spec.command.strip()
        if not command:
            self._signal_restart(spec)
            return

        try:
            argv = build_argv(command)
        except ValueError as e:
            raise ReloadSpawnError(f"cannot parse reload command: {e}") from e
        if not argv:
            raise ReloadSpawnError("reload command is empty")

        logger.info("reload_started", service=spec.service_name, command=command)
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=spec.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ReloadTimeoutError(
                f"reload command timed out after {spec.timeout:g}s"
            ) from e
        except OSError as e:
            raise ReloadSpawnError(f"cannot start reload command: {e}") from e

        if result.returncode != 0:
            raise ReloadExitError(result.returncode, result.stderr or "")

        logger.info("reload_completed", service=spec.service_name)

    def _signal_restart(self, spec: ReloadSpec) -> None:
        if self._signal_dir is None:
            logger.info("reload_skipped", service=spec.service_name, reason="no command configured")
            return

        path = self._signal_dir / RESTART_SIGNAL_FILENAME
        try:
            path.write_text(datetime.now(timezone.utc).isoformat() + "\n")
        except OSError as e:
            raise ReloadSpawnError(f"cannot write restart signal {path}: {e}") from e
        logger.info("restart_signal_written", service=spec.service_name, path=str(path))
