"""External command execution helpers.

Every collaborator (parted, losetup, mkfs.*, rsync, ...) is invoked through
run_command() so that command lines and their output land in the debug log.
"""

from __future__ import annotations

import subprocess
from typing import Sequence

from ab_partitioner.logging import LoggerFactory


log = LoggerFactory.for_commands()
output_log = log.bind(tags=["command", "command-output"])


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess:
    """Run a command, capturing text output.

    Args:
        command: Argument list (never a shell string)
        check: Raise CalledProcessError on a non-zero exit code
        log_output: Log stdout/stderr even on success
        log_command: Log the command line and its return code
        input_text: Optional text fed to stdin

    Returns:
        The completed process

    Raises:
        subprocess.CalledProcessError: If check is True and the command fails
        FileNotFoundError: If the executable does not exist
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, input=input_text
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            output_log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            output_log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        output_log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def command_error_message(error: subprocess.CalledProcessError) -> str:
    """Best single-line description of a failed command."""
    stderr = (error.stderr or "").strip()
    stdout = (error.stdout or "").strip()
    message = stderr or stdout or f"exit code {error.returncode}"
    return message.splitlines()[-1]
