"""
Cron scheduler service using APScheduler.

Keeps exactly one timer per active task:
- Timers are APScheduler jobs driven by CronExpressionTrigger
- Runs never wait for a free worker, one instance per task at a time
- A TimerRegistry serializes arm/disarm/tick for each task id
- PID file for status tracking of the foreground service

Task definitions live in the task store; timers are rebuilt from it on
start, so APScheduler's in-memory job store is all the scheduler needs.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
    EVENT_JOB_REMOVED,
)
from apscheduler.executors.base import BaseExecutor, run_job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from cronmanager.config import DEFAULT_HOME, DEFAULT_TIMEZONE
from cronmanager.cron import CronExpressionTrigger, next_trigger, parse_cron, resolve_timezone
from cronmanager.errors import InvalidScheduleError
from cronmanager.models import ExecutionOutcome, Task

logger = logging.getLogger(__name__)


def _get_pid_file_path() -> Path:
    """Get the path to the scheduler PID file."""
    pid_path = os.environ.get('CRON_MANAGER_PID_FILE')
    if pid_path:
        return Path(pid_path).expanduser()
    return DEFAULT_HOME / "scheduler.pid"


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_scheduler_running() -> Tuple[bool, Optional[int]]:
    """
    Check if the scheduler is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _get_pid_file_path()

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        # Stale PID file, clean it up
        pid_file.unlink()
        return False, None
    except (ValueError, OSError):
        return False, None


def write_pid_file() -> Path:
    pid_file = _get_pid_file_path()
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    logger.debug(f"Wrote PID file: {pid_file}")
    return pid_file


def remove_pid_file() -> None:
    pid_file = _get_pid_file_path()
    try:
        if pid_file.exists():
            pid_file.unlink()
            logger.debug(f"Removed PID file: {pid_file}")
    except OSError:
        pass


class OverflowThreadPoolExecutor(BaseExecutor):
    """
    APScheduler executor that never queues a run behind busy workers.

    Up to max_workers runs share pooled threads. When every pooled thread is
    busy, a run gets a thread of its own, so a long run of one task cannot
    hold back another task's trigger. max_instances is still enforced per job
    by BaseExecutor.
    """

    def __init__(self, max_workers: int = 5):
        super().__init__()
        self.max_workers = max_workers
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='cron-run')
        self._busy = 0
        self._busy_lock = threading.Lock()
        self._overflow: Set[threading.Thread] = set()

    def _do_submit_job(self, job, run_times):
        with self._busy_lock:
            pooled = self._busy < self.max_workers
            if pooled:
                self._busy += 1

        if pooled:
            self._pool.submit(self._run, job, run_times, True)
            return

        logger.info(f"All {self.max_workers} workers busy, running task '{job.id}' on its own thread")
        thread = threading.Thread(
            target=self._run,
            args=(job, run_times, False),
            name=f"cron-run-{job.id}",
            daemon=True
        )
        with self._busy_lock:
            self._overflow.add(thread)
        thread.start()

    def _run(self, job, run_times, pooled: bool):
        try:
            events = run_job(job, job._jobstore_alias, run_times, self._logger.name)
        except Exception as e:
            self._run_job_error(job.id, e, e.__traceback__)
        else:
            self._run_job_success(job.id, events)
        finally:
            with self._busy_lock:
                if pooled:
                    self._busy -= 1
                else:
                    self._overflow.discard(threading.current_thread())

    def shutdown(self, wait=True):
        self._pool.shutdown(wait)
        if wait:
            with self._busy_lock:
                overflow = list(self._overflow)
            for thread in overflow:
                thread.join()


class TimerRegistry:
    """
    Which tasks currently hold a timer, and under which generation.

    Every arm bumps the task's generation. A tick carries the generation it
    was armed with, so a stale tick cannot remove a newer timer.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._generations: Dict[str, int] = {}
        self._armed: Dict[str, int] = {}

    def lock(self, task_id: str) -> threading.Lock:
        """Per-task lock; hold it around register/unregister."""
        with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = self._locks[task_id] = threading.Lock()
            return lock

    def register(self, task_id: str) -> int:
        with self._guard:
            generation = self._generations.get(task_id, 0) + 1
            self._generations[task_id] = generation
            self._armed[task_id] = generation
            return generation

    def unregister(self, task_id: str) -> bool:
        with self._guard:
            return self._armed.pop(task_id, None) is not None

    def generation(self, task_id: str) -> Optional[int]:
        """Generation of the live timer, or None if the task is not armed."""
        with self._guard:
            return self._armed.get(task_id)

    def task_ids(self) -> List[str]:
        with self._guard:
            return sorted(self._armed)

    def clear(self) -> None:
        with self._guard:
            self._armed.clear()

    def __contains__(self, task_id: str) -> bool:
        with self._guard:
            return task_id in self._armed

    def __len__(self):
        with self._guard:
            return len(self._armed)


class CronScheduler:
    """
    Arms, disarms and fires task timers.

    Usage:
        scheduler = CronScheduler(store, pipeline, timezone='America/Sao_Paulo')
        scheduler.start()          # arms every active task
        scheduler.arm(task)        # after a create/update
        scheduler.disarm(task.id)  # after a stop/delete
        scheduler.shutdown()
    """

    def __init__(
        self,
        store,
        pipeline,
        timezone: Optional[str] = DEFAULT_TIMEZONE,
        max_workers: int = 5,
        misfire_grace_seconds: int = 30
    ):
        """
        Initialize scheduler service.

        Args:
            store: Task store (list_active, get, record_run)
            pipeline: ExecutionPipeline used for every run
            timezone: Reference time zone cron expressions are evaluated in
            max_workers: Pooled threads for task runs; runs beyond that get their own thread
            misfire_grace_seconds: How late a trigger may fire before it is skipped
        """
        self.store = store
        self.pipeline = pipeline
        self.timezone = resolve_timezone(timezone)
        self.registry = TimerRegistry()

        executors = {
            'default': OverflowThreadPoolExecutor(max_workers)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,  # Run N+1 never overlaps run N
            'misfire_grace_time': misfire_grace_seconds
        }

        self.scheduler = BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone
        )
        self._start_lock = threading.Lock()

        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Timer for task '{event.job_id}' finished its run")

        def job_error_listener(event):
            logger.error(
                f"Timer for task '{event.job_id}' raised exception: {event.exception}",
                exc_info=event.exception
            )

        def job_missed_listener(event):
            logger.warning(
                f"Task '{event.job_id}' missed scheduled run time {event.scheduled_run_time}"
            )

        def job_max_instances_listener(event):
            logger.warning(
                f"Task '{event.job_id}' is still running, skipping run at {event.scheduled_run_times}"
            )

        def job_removed_listener(event):
            # Also fires when a trigger runs out of fire times
            if self.registry.unregister(event.job_id):
                logger.info(f"Timer for task '{event.job_id}' was removed by the scheduler")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)
        self.scheduler.add_listener(job_removed_listener, EVENT_JOB_REMOVED)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def _ensure_running(self):
        with self._start_lock:
            if not self.scheduler.running:
                self.scheduler.start()
                logger.info(f"Timer backend started (timezone: {self.timezone})")

    def start(self) -> int:
        """
        Arm every active task from the current time.

        Missed fires while the service was down are not caught up. A task
        whose schedule is invalid is logged and skipped.

        Returns:
            Number of tasks armed
        """
        self._ensure_running()

        active = self.store.list_active()
        logger.info(f"Loading {len(active)} active task(s)")

        armed = 0
        for task in active:
            try:
                next_run = self.arm(task)
            except InvalidScheduleError as e:
                logger.error(f"Skipping task '{task.name}' ({task.id}): {e}")
                continue
            if next_run is None:
                continue
            armed += 1
            logger.info(f"  - {task.name}: next run at {next_run.isoformat()}")

        if not armed:
            logger.warning("No tasks armed")
        return armed

    def arm(self, task: Task, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Install (or replace) the timer of a task.

        A task that is not active is never armed; any timer it still holds
        is cancelled instead.

        Args:
            task: Task to arm
            now: Reference time (default: current time)

        Returns:
            The next trigger instant, or None if the task is not active

        Raises:
            InvalidScheduleError: If the schedule is malformed; nothing is armed
        """
        if not task.is_active:
            logger.info(f"Not arming task '{task.name}' ({task.id}): status is {task.status.value}")
            self.disarm(task.id)
            return None

        cron = parse_cron(task.schedule)
        next_run = next_trigger(cron, now, self.timezone)

        self._ensure_running()
        with self.registry.lock(task.id):
            self.registry.unregister(task.id)
            self._remove_job(task.id)
            generation = self.registry.register(task.id)
            self.scheduler.add_job(
                self.tick,
                trigger=CronExpressionTrigger(cron, self.timezone),
                args=[task.id, generation],
                id=task.id,
                name=task.name,
                next_run_time=next_run,
                replace_existing=True
            )

        self._record_next_run(task.id, next_run)
        logger.info(f"Armed task '{task.name}' ({task.schedule}), next run at {next_run.isoformat()}")
        return next_run

    def disarm(self, task_id: str) -> bool:
        """
        Cancel the timer of a task. An in-flight run is left to finish.

        Returns:
            True if a timer was removed, False if nothing was armed
        """
        with self.registry.lock(task_id):
            removed = self.registry.unregister(task_id)
            self._remove_job(task_id)

        if removed:
            logger.info(f"Disarmed task {task_id}")
        return removed

    def tick(self, task_id: str, generation: Optional[int] = None) -> Optional[ExecutionOutcome]:
        """
        Timer callback: run a task once if its timer is still live and the
        task is still active.

        A tick whose timer was disarmed or replaced by a newer arm does
        nothing, even if it was already queued when that happened.

        Args:
            task_id: Task whose timer fired
            generation: Generation the timer was armed with (None: current)

        Returns:
            The run's outcome, or None if the task was not run
        """
        with self.registry.lock(task_id):
            current = self.registry.generation(task_id)
            if current is None or (generation is not None and generation != current):
                logger.info(f"Ignoring stale timer for task {task_id}")
                return None
            generation = current

        try:
            task = self.store.get(task_id)
        except Exception as e:
            logger.error(f"Failed to load task {task_id}: {e}")
            return None

        if task is None or not task.is_active:
            logger.info(f"Task {task_id} is missing or no longer active, disarming")
            self._disarm_if_current(task_id, generation)
            return None

        try:
            self._record_next_run(task_id, next_trigger(task.schedule, tz=self.timezone))
        except InvalidScheduleError as e:
            logger.error(f"Task '{task.name}' has an invalid schedule, disarming: {e}")
            self._disarm_if_current(task_id, generation)
            return None

        outcome = self.pipeline.execute(task)

        try:
            refreshed = self.store.get(task_id)
        except Exception as e:
            logger.error(f"Failed to reload task {task_id}: {e}")
            return outcome

        if refreshed is None or not refreshed.is_active:
            self._disarm_if_current(task_id, generation)
        return outcome

    def is_armed(self, task_id: str) -> bool:
        return task_id in self.registry

    def armed_task_ids(self) -> List[str]:
        return self.registry.task_ids()

    def next_fire_time(self, task_id: str) -> Optional[datetime]:
        job = self.scheduler.get_job(task_id)
        if job is None:
            return None
        return getattr(job, 'next_run_time', None)

    def get_jobs(self) -> List[Dict[str, Optional[str]]]:
        """Armed timers as dicts, for display."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })
        return jobs

    def shutdown(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: If True, wait for running task runs to complete
        """
        if self.scheduler.running:
            logger.info("Stopping scheduler...")
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
        self.registry.clear()

    def _disarm_if_current(self, task_id: str, generation: Optional[int]) -> bool:
        with self.registry.lock(task_id):
            current = self.registry.generation(task_id)
            if current is None or (generation is not None and generation != current):
                return False
            self.registry.unregister(task_id)
            self._remove_job(task_id)

        logger.info(f"Disarmed task {task_id}")
        return True

    def _remove_job(self, task_id: str):
        try:
            self.scheduler.remove_job(task_id)
        except JobLookupError:
            pass

    def _record_next_run(self, task_id: str, next_run: datetime):
        try:
            self.store.record_run(task_id, next_run=next_run)
        except Exception as e:
            logger.error(f"Failed to record next run of task {task_id}: {e}")
