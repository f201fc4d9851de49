"""
Task management facade.

Ties the task store, the scheduler, the pipeline and the broadcaster
together: every change is persisted, logged as an activity event, reflected
in the timers, and pushed to live subscribers as fresh stats.
"""

import logging
from typing import Any, Dict, List, Optional

from cronmanager.broadcast import EventBroadcaster
from cronmanager.cron import next_trigger, parse_cron
from cronmanager.errors import TaskNotFoundError
from cronmanager.models import ActivityLogEvent, EventType, ExecutionOutcome, Task, TaskStatus
from cronmanager.notifications import NotificationFanout, RequestsWebhookTransport, SmtpEmailTransport
from cronmanager.pipeline import ExecutionPipeline
from cronmanager.runner import CommandRunner
from cronmanager.service import CronScheduler
from cronmanager.store import SqliteTaskStore

logger = logging.getLogger(__name__)


class TaskManager:
    """
    Create, edit, start, stop and run tasks.

    Without a scheduler (e.g. a one-shot CLI invocation) timers are not
    touched; the next run is still computed and stored so listings stay
    accurate until the service restarts.
    """

    def __init__(self, store, pipeline=None, scheduler=None, fanout=None,
                 broadcaster=None, timezone: Optional[str] = None):
        """
        Args:
            store: SqliteTaskStore
            pipeline: ExecutionPipeline (required for run_now)
            scheduler: CronScheduler holding live timers (optional)
            fanout: NotificationFanout used to record activity events
            broadcaster: EventBroadcaster for stats updates
            timezone: Zone used to compute next runs when there is no scheduler
        """
        self.store = store
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.fanout = fanout
        self.broadcaster = broadcaster
        self.timezone = scheduler.timezone if scheduler is not None else timezone

    @classmethod
    def from_config(cls, config, with_scheduler: bool = False) -> "TaskManager":
        """
        Wire store, runner, fan-out, pipeline and (optionally) scheduler from config.

        Args:
            config: ManagerConfig
            with_scheduler: Create a CronScheduler that owns live timers
        """
        store = SqliteTaskStore(config.db_path)
        broadcaster = EventBroadcaster()
        fanout = NotificationFanout(
            store,
            broadcaster,
            webhook_url=config.webhook.url,
            webhook_transport=RequestsWebhookTransport(config.webhook.timeout_seconds),
            email_transport=SmtpEmailTransport(config.smtp),
            log_output_chars=config.log_output_chars,
            max_workers=config.notification_workers
        )
        pipeline = ExecutionPipeline(store, CommandRunner(config.max_output_bytes), fanout)

        scheduler = None
        if with_scheduler:
            scheduler = CronScheduler(
                store,
                pipeline,
                timezone=config.timezone,
                max_workers=config.max_workers,
                misfire_grace_seconds=config.misfire_grace_seconds
            )

        return cls(store, pipeline=pipeline, scheduler=scheduler, fanout=fanout,
                   broadcaster=broadcaster, timezone=config.timezone)

    def shutdown(self, wait: bool = True):
        """Stop timers, then let pending notifications finish."""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=wait)
        if self.fanout is not None:
            self.fanout.shutdown(wait=wait)

    def list_tasks(self) -> List[Task]:
        return self.store.list_tasks()

    def get_task(self, task_id: str) -> Task:
        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def create_task(self, name: str, command: str, schedule: str, **fields: Any) -> Task:
        """
        Validate and persist a new task, arming it when active.

        Raises:
            InvalidScheduleError: If the schedule is malformed; nothing is persisted
            ValueError: If the timeout is not positive
        """
        parse_cron(schedule)
        _check_timeout(fields.get('timeout_seconds'))
        # Unset fields fall back to the store's defaults
        fields = {key: value for key, value in fields.items() if value is not None}

        task = self.store.create_task(name=name, command=command, schedule=schedule, **fields)
        logger.info(f"Created task '{task.name}' ({task.id})")
        self._log(task, EventType.TASK_CREATED, f"Task '{task.name}' created",
                  {'schedule': task.schedule, 'command': task.command})

        if task.is_active:
            task = self._arm(task)
        self._publish_stats()
        return task

    def update_task(self, task_id: str, **fields: Any) -> Task:
        """
        Edit a task; its timer follows the new definition.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidScheduleError: If a new schedule is malformed; nothing is changed
        """
        self.get_task(task_id)
        if 'schedule' in fields:
            parse_cron(fields['schedule'])
        _check_timeout(fields.get('timeout_seconds'))
        # Only the description may be cleared
        fields = {key: value for key, value in fields.items()
                  if value is not None or key == 'description'}

        task = self.store.update_task(task_id, **fields)
        if task is None:
            raise TaskNotFoundError(task_id)

        self._log(task, EventType.TASK_UPDATED, f"Task '{task.name}' updated",
                  {'fields': sorted(fields)})

        if task.is_active:
            task = self._arm(task)
        else:
            self._disarm(task_id)
        self._publish_stats()
        return task

    def delete_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        self._disarm(task_id)
        self.store.delete_task(task_id)
        logger.info(f"Deleted task '{task.name}' ({task_id})")
        self._log(task, EventType.TASK_DELETED, f"Task '{task.name}' deleted")
        self._publish_stats()
        return task

    def start_task(self, task_id: str) -> Task:
        """Activate a task (also the only way out of the error state)."""
        task = self.get_task(task_id)
        parse_cron(task.schedule)

        self.store.set_status(task_id, TaskStatus.ACTIVE)
        task = self._arm(self.get_task(task_id))
        self._log(task, EventType.TASK_STARTED, f"Task '{task.name}' started")
        self._publish_stats()
        return task

    def stop_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        self.store.set_status(task_id, TaskStatus.PAUSED)
        self._disarm(task_id)
        task = self.get_task(task_id)
        self._log(task, EventType.TASK_STOPPED, f"Task '{task.name}' stopped")
        self._publish_stats()
        return task

    def run_now(self, task_id: str) -> ExecutionOutcome:
        """Run a task once, immediately, regardless of its status."""
        if self.pipeline is None:
            raise RuntimeError("TaskManager has no execution pipeline")
        task = self.get_task(task_id)
        outcome = self.pipeline.execute(task)
        self._publish_stats()
        return outcome

    def stats(self) -> Dict[str, int]:
        return self.store.get_stats()

    def recent_events(self, limit: int = 50, task_id: Optional[str] = None) -> List[ActivityLogEvent]:
        return self.store.list_events(limit=limit, task_id=task_id)

    def record_webhook(self, task_id: str, status: str,
                       details: Optional[Dict[str, Any]] = None) -> ActivityLogEvent:
        """
        Record a webhook received from an external system about a task.

        Args:
            task_id: Task the webhook refers to
            status: Status reported by the sender
            details: Extra fields reported by the sender

        Returns:
            The webhook_received event that was logged

        Raises:
            ValueError: If task_id or status is missing, or details is not a mapping
            TaskNotFoundError: If the task does not exist
        """
        if not task_id or not status:
            raise ValueError("task_id and status are required")
        if details is not None and not isinstance(details, dict):
            raise ValueError(f"details must be an object, got {type(details).__name__}")

        task = self.get_task(task_id)
        logger.info(f"Webhook received for task '{task.name}' ({task_id}): {status}")
        return self._log(task, EventType.WEBHOOK_RECEIVED, f"Webhook received for task {task.name}",
                         {'status': status, **(details or {})})

    def _arm(self, task: Task) -> Task:
        if self.scheduler is not None:
            self.scheduler.arm(task)
        else:
            self.store.record_run(task.id, next_run=next_trigger(task.schedule, tz=self.timezone))
        return self.get_task(task.id)

    def _disarm(self, task_id: str):
        if self.scheduler is not None:
            self.scheduler.disarm(task_id)

    def _log(self, task: Task, event_type: EventType, message: str,
             details: Optional[Dict[str, Any]] = None) -> ActivityLogEvent:
        event = ActivityLogEvent(task_id=task.id, type=event_type, message=message, details=details)
        if self.fanout is not None:
            self.fanout.emit(event)
            return event
        try:
            self.store.append(event)
        except Exception as e:
            logger.error(f"Failed to append {event_type.value} event for task {task.id}: {e}")
        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(event)
            except Exception as e:
                logger.warning(f"Failed to broadcast {event_type.value} event: {e}")
        return event

    def _publish_stats(self):
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish_stats(self.stats())
        except Exception as e:
            logger.warning(f"Failed to publish stats: {e}")


def _check_timeout(timeout_seconds: Optional[int]):
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
