"""
Data models for cron tasks, execution outcomes and activity log events.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"

    @classmethod
    def from_db(cls, value: Optional[str]) -> "TaskStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.PAUSED


class EventType(str, Enum):
    """Fixed vocabulary of activity log event types."""
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_DELETED = "task_deleted"
    TASK_STARTED = "task_started"
    TASK_STOPPED = "task_stopped"
    TASK_EXECUTED = "task_executed"
    TASK_FAILED = "task_failed"
    WEBHOOK_SENT = "webhook_sent"
    WEBHOOK_FAILED = "webhook_failed"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    WEBHOOK_RECEIVED = "webhook_received"


class RunResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class Task:
    """
    A scheduled shell command.

    The record is owned by the task store; the scheduler and the execution
    pipeline only touch status, last_run, next_run and the two counters.
    """
    id: str
    name: str
    command: str
    schedule: str  # 5-field cron expression
    timeout_seconds: int = 300
    status: TaskStatus = TaskStatus.PAUSED
    description: Optional[str] = None
    enable_webhook: bool = False
    enable_email_notification: bool = False
    email_on_success: bool = False
    email_on_failure: bool = True
    log_output: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    error_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == TaskStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'command': self.command,
            'schedule': self.schedule,
            'timeout_seconds': self.timeout_seconds,
            'status': self.status.value,
            'enable_webhook': self.enable_webhook,
            'enable_email_notification': self.enable_email_notification,
            'email_on_success': self.email_on_success,
            'email_on_failure': self.email_on_failure,
            'log_output': self.log_output,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'last_run': _iso(self.last_run),
            'next_run': _iso(self.next_run),
            'run_count': self.run_count,
            'error_count': self.error_count,
        }


@dataclass
class ExecutionOutcome:
    """Result of one execution attempt. Never persisted as its own entity."""
    task_id: str
    result: RunResult
    duration_ms: int
    timestamp: datetime = field(default_factory=utcnow)
    output: Optional[str] = None
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result == RunResult.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'task_id': self.task_id,
            'result': self.result.value,
            'output': self.output,
            'error_message': self.error_message,
            'exit_code': self.exit_code,
            'timed_out': self.timed_out,
            'duration_ms': self.duration_ms,
            'timestamp': _iso(self.timestamp),
        }


@dataclass
class ActivityLogEvent:
    """Append-only activity record. The store assigns `id` on append."""
    task_id: Optional[str]
    type: EventType
    message: str
    details: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'task_id': self.task_id,
            'type': self.type.value,
            'message': self.message,
            'details': self.details,
            'created_at': _iso(self.created_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
