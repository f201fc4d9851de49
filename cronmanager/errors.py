"""
Error taxonomy for the cron task manager.

Schedule errors surface to whoever creates or edits a task. Command errors
are classified by the execution pipeline and never raised past it.
Channel errors are caught per notification channel.
"""

from typing import Optional


class CronManagerError(Exception):
    """Base class for all cron manager errors."""
    pass


class InvalidScheduleError(CronManagerError, ValueError):
    """Raised when a cron expression does not follow the 5-field grammar."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


class TaskNotFoundError(CronManagerError, LookupError):
    """Raised when a task id is not known to the store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")


class CommandExecutionError(CronManagerError):
    """Raised when a command fails to run to a successful exit."""

    def __init__(self, message: str, output: str = "", exit_code: Optional[int] = None):
        self.output = output
        self.exit_code = exit_code
        super().__init__(message)


class CommandTimeoutError(CommandExecutionError):
    """The command exceeded its wall-clock timeout and was killed."""

    def __init__(self, timeout_seconds: float, output: str = ""):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Command exceeded the timeout of {timeout_seconds} seconds",
            output=output
        )


class SpawnError(CommandExecutionError):
    """The command could not be started at all."""
    pass


class NonZeroExitError(CommandExecutionError):
    """The command ran to completion but exited with a non-zero status."""

    def __init__(self, exit_code: int, output: str = ""):
        super().__init__(
            f"Command failed with exit code {exit_code}",
            output=output,
            exit_code=exit_code
        )


class ChannelDeliveryError(CronManagerError):
    """A notification channel (webhook, email) failed to deliver."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(f"{channel} delivery failed: {message}")
