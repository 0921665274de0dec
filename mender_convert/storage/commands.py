"""Command execution for external block-device and filesystem tools.

Every collaborator takes a ``runner`` with the signature of
:func:`run_command` so tests can substitute a double.
"""

from __future__ import annotations

import subprocess
from typing import Callable, Optional, Sequence

from mender_convert.exceptions import ExternalToolError
from mender_convert.logging import LoggerFactory


log = LoggerFactory.for_storage()

CommandRunner = Callable[..., subprocess.CompletedProcess]


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run ``command`` and capture its output.

    With ``check`` a non-zero exit raises ExternalToolError; without it the
    CompletedProcess is returned for the caller to inspect.
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as error:
        log.error(f"Command not found: {command[0]}")
        raise ExternalToolError(command, 127, stderr=str(error)) from error
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode != 0:
        raise ExternalToolError(
            command, result.returncode, stderr=result.stderr or "", stdout=result.stdout or ""
        )
    return result


def run_checked_command(
    command: Sequence[str],
    input_text: Optional[str] = None,
    runner: CommandRunner = run_command,
) -> str:
    """Run a command and return its stdout, raising ExternalToolError on failure."""
    result = runner(command, check=False, input_text=input_text)
    if result.returncode != 0:
        raise ExternalToolError(
            command, result.returncode, stderr=result.stderr or "", stdout=result.stdout or ""
        )
    return result.stdout or ""
