"""
SQLite-backed task store and activity log sink.

Each method opens its own connection, so the store can be shared between
the scheduler thread, the worker pool and the command line.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cronmanager.models import ActivityLogEvent, EventType, Task, TaskStatus, utcnow

logger = logging.getLogger(__name__)

# Columns callers may change through update_task()
EDITABLE_FIELDS = (
    'name', 'description', 'command', 'schedule', 'timeout_seconds', 'status',
    'enable_webhook', 'enable_email_notification', 'email_on_success',
    'email_on_failure', 'log_output'
)

_BOOL_FIELDS = (
    'enable_webhook', 'enable_email_notification', 'email_on_success',
    'email_on_failure', 'log_output'
)


class SqliteTaskStore:
    """
    Task store and log sink on a single SQLite database.

    Tables:
    - cron_tasks: task definitions plus run bookkeeping
    - activity_logs: append-only activity events
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file (created if missing)
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._create_tables()
        logger.info(f"Task store ready: {self.db_path}")

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _create_tables(self):
        """Create database tables if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cron_tasks (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    command TEXT NOT NULL,
                    schedule TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'paused',
                    timeout_seconds INTEGER NOT NULL DEFAULT 300,
                    enable_webhook INTEGER NOT NULL DEFAULT 0,
                    enable_email_notification INTEGER NOT NULL DEFAULT 0,
                    email_on_success INTEGER NOT NULL DEFAULT 0,
                    email_on_failure INTEGER NOT NULL DEFAULT 1,
                    log_output INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_run TEXT,
                    next_run TEXT,
                    run_count INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_logs (
                    id TEXT PRIMARY KEY,
                    task_id TEXT,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON cron_tasks(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_task ON activity_logs(task_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_created ON activity_logs(created_at)")

    # ---- task CRUD ----

    def create_task(
        self,
        name: str,
        command: str,
        schedule: str,
        timeout_seconds: int = 300,
        status: TaskStatus = TaskStatus.PAUSED,
        description: Optional[str] = None,
        enable_webhook: bool = False,
        enable_email_notification: bool = False,
        email_on_success: bool = False,
        email_on_failure: bool = True,
        log_output: bool = True,
        task_id: Optional[str] = None
    ) -> Task:
        """Insert a new task and return it."""
        now = utcnow()
        task = Task(
            id=task_id or uuid.uuid4().hex,
            name=name,
            description=description,
            command=command,
            schedule=schedule,
            timeout_seconds=timeout_seconds,
            status=TaskStatus(status),
            enable_webhook=enable_webhook,
            enable_email_notification=enable_email_notification,
            email_on_success=email_on_success,
            email_on_failure=email_on_failure,
            log_output=log_output,
            created_at=now,
            updated_at=now
        )

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cron_tasks (
                    id, name, description, command, schedule, status, timeout_seconds,
                    enable_webhook, enable_email_notification, email_on_success,
                    email_on_failure, log_output, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id, task.name, task.description, task.command, task.schedule,
                    task.status.value, task.timeout_seconds,
                    int(task.enable_webhook), int(task.enable_email_notification),
                    int(task.email_on_success), int(task.email_on_failure),
                    int(task.log_output), _to_text(now), _to_text(now)
                )
            )

        logger.debug(f"Created task {task.id} ({task.name})")
        return task

    def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """
        Update editable fields of a task.

        Returns:
            The updated task, or None if it does not exist
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        if fields:
            assignments = []
            params = []
            for key, value in fields.items():
                if key == 'status':
                    value = TaskStatus(value).value
                elif key in _BOOL_FIELDS:
                    value = int(bool(value))
                assignments.append(f"{key} = ?")
                params.append(value)
            assignments.append("updated_at = ?")
            params.append(_to_text(utcnow()))
            params.append(task_id)

            with self._connect() as conn:
                conn.execute(
                    f"UPDATE cron_tasks SET {', '.join(assignments)} WHERE id = ?",
                    params
                )

        return self.get(task_id)

    def delete_task(self, task_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM cron_tasks WHERE id = ?", (task_id,))
            return cursor.rowcount > 0

    def get(self, task_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM cron_tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM cron_tasks ORDER BY created_at").fetchall()
        return [_row_to_task(row) for row in rows]

    def list_active(self) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM cron_tasks WHERE status = ? ORDER BY created_at",
                (TaskStatus.ACTIVE.value,)
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    # ---- run bookkeeping used by the scheduler and the pipeline ----

    def set_status(self, task_id: str, status: TaskStatus) -> bool:
        return self._execute(
            "UPDATE cron_tasks SET status = ?, updated_at = ? WHERE id = ?",
            (TaskStatus(status).value, _to_text(utcnow()), task_id)
        )

    def record_run(
        self,
        task_id: str,
        last_run: Optional[datetime] = None,
        next_run: Optional[datetime] = None
    ) -> bool:
        """Set last_run and/or next_run; a None argument leaves that column alone."""
        assignments = []
        params = []
        if last_run is not None:
            assignments.append("last_run = ?")
            params.append(_to_text(last_run))
        if next_run is not None:
            assignments.append("next_run = ?")
            params.append(_to_text(next_run))
        if not assignments:
            return False
        params.append(task_id)
        return self._execute(
            f"UPDATE cron_tasks SET {', '.join(assignments)} WHERE id = ?", params
        )

    def increment_run_count(self, task_id: str) -> bool:
        return self._execute(
            "UPDATE cron_tasks SET run_count = run_count + 1 WHERE id = ?", (task_id,)
        )

    def increment_error_count(self, task_id: str) -> bool:
        return self._execute(
            "UPDATE cron_tasks SET error_count = error_count + 1 WHERE id = ?", (task_id,)
        )

    def _execute(self, sql: str, params) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount > 0

    # ---- activity log sink ----

    def append(self, event: ActivityLogEvent) -> ActivityLogEvent:
        """Persist an activity event; assigns its id."""
        if event.id is None:
            event.id = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_logs (id, task_id, type, message, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id, event.task_id, EventType(event.type).value, event.message,
                    json.dumps(event.details, default=str) if event.details is not None else None,
                    _to_text(event.created_at)
                )
            )
        return event

    def list_events(
        self,
        limit: Optional[int] = 50,
        task_id: Optional[str] = None,
        event_type: Optional[EventType] = None
    ) -> List[ActivityLogEvent]:
        """Return activity events, most recent first."""
        query = "SELECT * FROM activity_logs WHERE 1 = 1"
        params: List[Any] = []
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        if event_type:
            query += " AND type = ?"
            params.append(EventType(event_type).value)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Dashboard counters.

        Returns:
            Dict with active_tasks, paused_tasks, failures (tasks in error)
            and today_executions (successful runs since 00:00 UTC)
        """
        now = now or utcnow()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self._connect() as conn:
            counts = {
                row['status']: row['n']
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM cron_tasks GROUP BY status"
                )
            }
            (today,) = conn.execute(
                "SELECT COUNT(*) FROM activity_logs WHERE type = ? AND created_at >= ? AND created_at < ?",
                (
                    EventType.TASK_EXECUTED.value,
                    _to_text(midnight),
                    _to_text(midnight + timedelta(days=1))
                )
            ).fetchone()

        return {
            'active_tasks': counts.get(TaskStatus.ACTIVE.value, 0),
            'paused_tasks': counts.get(TaskStatus.PAUSED.value, 0),
            'failures': counts.get(TaskStatus.ERROR.value, 0),
            'today_executions': today,
        }

    def __repr__(self):
        return f"SqliteTaskStore(db_path={self.db_path})"


def _to_text(value: Optional[datetime]) -> Optional[str]:
    """Store timestamps as UTC ISO strings so text ordering is time ordering."""
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError(f"Naive datetime cannot be stored: {value!r}")
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row['id'],
        name=row['name'],
        description=row['description'],
        command=row['command'],
        schedule=row['schedule'],
        status=TaskStatus.from_db(row['status']),
        timeout_seconds=int(row['timeout_seconds']),
        enable_webhook=bool(row['enable_webhook']),
        enable_email_notification=bool(row['enable_email_notification']),
        email_on_success=bool(row['email_on_success']),
        email_on_failure=bool(row['email_on_failure']),
        log_output=bool(row['log_output']),
        created_at=_from_text(row['created_at']),
        updated_at=_from_text(row['updated_at']),
        last_run=_from_text(row['last_run']),
        next_run=_from_text(row['next_run']),
        run_count=int(row['run_count']),
        error_count=int(row['error_count'])
    )


def _row_to_event(row: sqlite3.Row) -> ActivityLogEvent:
    return ActivityLogEvent(
        id=row['id'],
        task_id=row['task_id'],
        type=EventType(row['type']),
        message=row['message'],
        details=json.loads(row['details']) if row['details'] else None,
        created_at=_from_text(row['created_at'])
    )
