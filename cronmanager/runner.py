"""
Shell command execution with a wall-clock timeout.

Every invocation starts the command in its own session (and so its own
process group), drains merged stdout/stderr on a private reader thread into
a bounded buffer, and kills and reaps the whole group on every exit path.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from cronmanager.errors import CommandTimeoutError, NonZeroExitError, SpawnError

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
EMPTY_OUTPUT_MESSAGE = "Command completed with no output"
TRUNCATION_MARKER = "\n... [output truncated]"

_READ_CHUNK = 4096
_KILL_GRACE_SECONDS = 2.0
_READER_JOIN_SECONDS = 5.0


@dataclass
class CommandResult:
    """Captured result of a command that exited with status 0."""
    output: str
    exit_code: int
    duration_seconds: float
    truncated: bool = False


class _BoundedReader(threading.Thread):
    """Drains a pipe, keeping at most `limit` bytes and discarding the rest."""

    def __init__(self, stream, limit: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.chunks = []
        self.size = 0
        self.truncated = False

    def run(self):
        try:
            while True:
                chunk = self.stream.read(_READ_CHUNK)
                if not chunk:
                    break
                remaining = self.limit - self.size
                if remaining > 0:
                    kept = chunk[:remaining]
                    self.chunks.append(kept)
                    self.size += len(kept)
                if len(chunk) > max(remaining, 0):
                    self.truncated = True
        except (OSError, ValueError) as e:
            logger.debug(f"Output reader stopped: {e}")
        finally:
            try:
                self.stream.close()
            except OSError:
                pass

    def text(self) -> str:
        data = b''.join(self.chunks).decode('utf-8', errors='replace')
        if self.truncated:
            data += TRUNCATION_MARKER
        return data


class CommandRunner:
    """
    Runs one shell command per call.

    Usage:
        runner = CommandRunner()
        result = runner.run('echo ok', timeout_seconds=30)
    """

    def __init__(
        self,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        shell: str = '/bin/sh',
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None
    ):
        """
        Initialize the runner.

        Args:
            max_output_bytes: Cap on captured output; the excess is discarded
            shell: Shell used to interpret the command string
            working_dir: Working directory for commands (default: inherited)
            env: Extra environment variables layered over a copy of os.environ
        """
        self.max_output_bytes = max_output_bytes
        self.shell = shell
        self.working_dir = working_dir
        self.env = dict(env or {})

    def run(self, command: str, timeout_seconds: float) -> CommandResult:
        """
        Execute a shell command and wait for it.

        Args:
            command: Shell command to execute
            timeout_seconds: Wall-clock budget; the process group is killed after it

        Returns:
            CommandResult with merged stdout/stderr

        Raises:
            CommandTimeoutError: If the timeout elapsed
            SpawnError: If the process could not be started
            NonZeroExitError: If the command exited with a non-zero status
        """
        if timeout_seconds is None or timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")

        env = os.environ.copy()
        env.update(self.env)

        logger.debug(f"Executing command: {command}")
        start = time.monotonic()

        try:
            process = subprocess.Popen(
                [self.shell, '-c', command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=self.working_dir,
                env=env,
                start_new_session=True
            )
        except OSError as e:
            logger.error(f"Failed to start command '{command}': {e}")
            raise SpawnError(f"Failed to start command: {e}") from e

        reader = _BoundedReader(process.stdout, self.max_output_bytes)
        reader.start()
        timed_out = False

        try:
            process.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"Command timed out after {timeout_seconds}s, killing process group {process.pid}")
        finally:
            # Descendants may outlive the shell and keep the pipe open
            self._kill_group(process)
            reader.join(_READER_JOIN_SECONDS)

        duration = time.monotonic() - start
        output = reader.text()

        if timed_out:
            raise CommandTimeoutError(timeout_seconds, output=output)

        if process.returncode != 0:
            raise NonZeroExitError(process.returncode, output=output)

        return CommandResult(
            output=output or EMPTY_OUTPUT_MESSAGE,
            exit_code=process.returncode,
            duration_seconds=duration,
            truncated=reader.truncated
        )

    def _kill_group(self, process: subprocess.Popen) -> None:
        """Kill whatever is left of the child's process group and reap the child."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Cannot signal process group {process.pid}: {e}")

        try:
            process.wait(timeout=_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {process.pid} did not exit after SIGKILL")
