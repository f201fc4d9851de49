"""
Execution pipeline: one run of one task.

Runs the command, keeps the task's counters and status in the store, records
the outcome and hands it to the notification fan-out. Nothing raised by the
command or the store escapes execute().
"""

import logging
import threading
import time
from enum import Enum
from typing import Dict

from cronmanager.errors import CommandExecutionError, CommandTimeoutError
from cronmanager.models import (
    ActivityLogEvent,
    EventType,
    ExecutionOutcome,
    RunResult,
    Task,
    TaskStatus,
)
from cronmanager.notifications import NotificationFanout
from cronmanager.runner import CommandRunner

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExecutionPipeline:
    """
    Executes tasks and records their outcomes.

    Usage:
        pipeline = ExecutionPipeline(store, CommandRunner(), fanout)
        outcome = pipeline.execute(task)
    """

    def __init__(
        self,
        store,
        runner: CommandRunner,
        fanout: NotificationFanout
    ):
        """
        Initialize the pipeline.

        Args:
            store: Task store (counters, status, last_run)
            runner: Command runner
            fanout: Notification fan-out, which also owns the log sink
        """
        self.store = store
        self.runner = runner
        self.fanout = fanout
        self._states: Dict[str, RunState] = {}
        self._lock = threading.Lock()

    def state_of(self, task_id: str) -> RunState:
        """State of the latest run of a task (IDLE if it never ran)."""
        with self._lock:
            return self._states.get(task_id, RunState.IDLE)

    def _set_state(self, task_id: str, state: RunState) -> None:
        with self._lock:
            self._states[task_id] = state

    def execute(self, task: Task) -> ExecutionOutcome:
        """
        Run a task once.

        Args:
            task: Task to run (a snapshot read just before the run)

        Returns:
            ExecutionOutcome of the run
        """
        self._set_state(task.id, RunState.RUNNING)
        logger.info(f"Running task '{task.name}' ({task.id}): {task.command}")

        if task.log_output:
            self.fanout.emit(ActivityLogEvent(
                task_id=task.id,
                type=EventType.TASK_STARTED,
                message=f"Running task '{task.name}'",
                details={'command': task.command}
            ))

        start = time.monotonic()
        try:
            result = self.runner.run(task.command, task.timeout_seconds)
        except CommandExecutionError as e:
            outcome = ExecutionOutcome(
                task_id=task.id,
                result=RunResult.FAILURE,
                duration_ms=_elapsed_ms(start),
                output=(e.output or None),
                error_message=str(e),
                exit_code=e.exit_code,
                timed_out=isinstance(e, CommandTimeoutError)
            )
            self._record_failure(task, outcome)
        except Exception as e:
            # e.g. a stored timeout the runner refuses
            outcome = ExecutionOutcome(
                task_id=task.id,
                result=RunResult.FAILURE,
                duration_ms=_elapsed_ms(start),
                error_message=f"Could not run command: {e}"
            )
            self._record_failure(task, outcome)
        else:
            outcome = ExecutionOutcome(
                task_id=task.id,
                result=RunResult.SUCCESS,
                duration_ms=_elapsed_ms(start),
                output=result.output,
                exit_code=result.exit_code
            )
            self._record_success(task, outcome)

        try:
            self.fanout.notify(task, outcome)
        except Exception as e:
            logger.error(f"Notification fan-out failed for task {task.id}: {e}")

        return outcome

    def _record_success(self, task: Task, outcome: ExecutionOutcome) -> None:
        self._set_state(task.id, RunState.SUCCEEDED)
        logger.info(f"Task '{task.name}' succeeded in {outcome.duration_ms}ms")
        try:
            self.store.increment_run_count(task.id)
            self.store.record_run(task.id, last_run=outcome.timestamp)
        except Exception as e:
            logger.error(f"Failed to record success of task {task.id}: {e}")

    def _record_failure(self, task: Task, outcome: ExecutionOutcome) -> None:
        self._set_state(task.id, RunState.FAILED)
        logger.error(f"Task '{task.name}' failed: {outcome.error_message}")
        try:
            self.store.increment_error_count(task.id)
            self.store.set_status(task.id, TaskStatus.ERROR)
        except Exception as e:
            logger.error(f"Failed to record failure of task {task.id}: {e}")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
