"""
External command execution.

Thin wrapper over subprocess used for every tool the pipeline invokes
(ruby, gem, bundle, rake). Commands are argument lists; the environment is
passed explicitly so build steps never depend on the process environment.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from languagepack.core.exceptions import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command."""

    command: List[str]
    returncode: int
    output: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


class ShellRunner:
    """
    Runs external commands in the build directory.

    Example:
        >>> shell = ShellRunner(Path('/tmp/build'))
        >>> result = shell.run(['bundle', 'version'], env=build_env.variables)
        >>> result.success
        True
    """

    def __init__(self, cwd: Path):
        self.cwd = Path(cwd)

    def run(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """
        Run a command and capture stdout and stderr combined.

        Raises:
            CommandError: If the executable cannot be started
        """
        cmd = [str(part) for part in command]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd or self.cwd,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise CommandError(f"Failed to execute {cmd[0]}: {e}") from e

        return CommandResult(cmd, completed.returncode, completed.stdout or "")

    def run_stdout(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> str:
        """
        Run a command and return its stdout, with stderr discarded.

        Raises:
            CommandError: If the executable cannot be started or exits non-zero
        """
        cmd = [str(part) for part in command]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd or self.cwd,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
            )
        except OSError as e:
            raise CommandError(f"Failed to execute {cmd[0]}: {e}") from e

        if completed.returncode != 0:
            raise CommandError(
                f"Command failed with exit code {completed.returncode}: {' '.join(cmd)}"
            )
        return completed.stdout or ""
