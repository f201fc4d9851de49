"""
Command-line interface for the cron task manager.

Provides CLI commands for:
- Starting/stopping the scheduler service
- Adding/removing/enabling/disabling tasks
- Running a task immediately
- Recording webhooks received from other systems
- Viewing activity logs, stats and upcoming trigger times
- Managing configuration

Tasks live in the SQLite database; a running scheduler picks up edits made
from another process after a restart.
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from cronmanager.config import ManagerConfig
from cronmanager.cron import humanize, upcoming_triggers
from cronmanager.errors import CronManagerError
from cronmanager.manager import TaskManager
from cronmanager.models import TaskStatus
from cronmanager.service import is_scheduler_running, remove_pid_file, write_pid_file
from cronmanager.store import SqliteTaskStore

logger = logging.getLogger(__name__)

RESTART_HINT = "Restart scheduler for changes to take effect"


def setup_logging(log_file: str = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, str(level).upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    # APScheduler logs every wakeup at INFO
    if not verbose:
        logging.getLogger('apscheduler').setLevel(logging.WARNING)


def _load_config(args) -> ManagerConfig:
    config = ManagerConfig(args.config)
    if getattr(args, 'db', None):
        config.db_path = args.db
    return config


def _format_time(value) -> str:
    return value.astimezone().strftime('%Y-%m-%d %H:%M:%S') if value else '-'


def cmd_start(args):
    """Start the scheduler service."""
    config = _load_config(args)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        level=config.logging.level
    )

    errors = config.validate()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)

    running, pid = is_scheduler_running()
    if running:
        logger.warning(f"Scheduler is already running (PID: {pid})")
        sys.exit(1)

    if args.workers:
        config.max_workers = args.workers

    logger.info("Starting cron manager...")

    try:
        manager = TaskManager.from_config(config, with_scheduler=True)
        armed = manager.scheduler.start()
        write_pid_file()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        raise SystemExit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Scheduler started with {armed} active task(s)")
    if args.foreground:
        logger.info("Running in foreground mode. Press Ctrl+C to stop.")
    else:
        logger.info("Use 'cron-manager stop' to stop it")

    try:
        while manager.scheduler.running:
            time.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        manager.shutdown(wait=True)
        remove_pid_file()


def cmd_stop(args):
    """Stop the scheduler service."""
    setup_logging(verbose=args.verbose)

    running, pid = is_scheduler_running()
    if not running:
        logger.warning("Scheduler does not appear to be running (no PID file)")
        return

    try:
        logger.info(f"Stopping scheduler (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        # Wait for process to stop
        for _ in range(10):
            time.sleep(1)
            try:
                os.kill(pid, 0)
            except OSError:
                logger.info("Scheduler stopped successfully")
                remove_pid_file()
                return

        logger.warning("Scheduler did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)
        remove_pid_file()

    except OSError as e:
        logger.error(f"Failed to stop scheduler: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show scheduler status and task counters."""
    setup_logging(verbose=args.verbose)

    running, pid = is_scheduler_running()
    if running:
        print(f"\n  Status:     \033[92m● Running\033[0m")
        print(f"  PID:        {pid}")
    else:
        print(f"\n  Status:     \033[91m○ Not Running\033[0m")
        print("\n  Start the scheduler with: cron-manager start --foreground")

    try:
        manager = TaskManager(_store_only(args))
        stats = manager.stats()
    except Exception as e:
        logger.error(f"Failed to read task store: {e}")
        sys.exit(1)

    print(f"\n  Active tasks:     {stats['active_tasks']}")
    print(f"  Paused tasks:     {stats['paused_tasks']}")
    print(f"  Failing tasks:    {stats['failures']}")
    print(f"  Runs today (UTC): {stats['today_executions']}\n")


def _store_only(args) -> SqliteTaskStore:
    return SqliteTaskStore(_load_config(args).db_path)


def cmd_list(args):
    """List all tasks."""
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager(_store_only(args))
        tasks = manager.list_tasks()
    except Exception as e:
        logger.error(f"Failed to list tasks: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    if not tasks:
        print("No tasks defined")
        print("Add one with: cron-manager add NAME --command CMD --cron EXPR")
        return

    headers = ['ID', 'Name', 'Schedule', 'Status', 'Runs', 'Errors', 'Next Run']
    rows = [
        [t.id[:8], t.name, t.schedule, t.status.value, str(t.run_count),
         str(t.error_count), _format_time(t.next_run) if t.is_active else '-']
        for t in tasks
    ]
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

    def make_row(cells):
        return "│ " + " │ ".join(cell.ljust(w) for cell, w in zip(cells, widths)) + " │"

    def make_separator(left, mid, right, fill='─'):
        return left + mid.join(fill * (w + 2) for w in widths) + right

    print()
    print(make_separator('┌', '┬', '┐'))
    print(make_row(headers))
    print(make_separator('├', '┼', '┤'))
    for row in rows:
        print(make_row(row))
    print(make_separator('└', '┴', '┘'))
    print(f"\n{len(tasks)} task(s)")


def _resolve_task_id(manager: TaskManager, prefix: str) -> str:
    """Accept a full id or an unambiguous prefix (as shown by `list`)."""
    matches = [t.id for t in manager.list_tasks() if t.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise CronManagerError(f"Task id prefix '{prefix}' is ambiguous")
    return prefix


def cmd_add(args):
    """Add a new task."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager.from_config(config)
        task = manager.create_task(
            name=args.name,
            command=args.command,
            schedule=args.cron,
            timeout_seconds=args.timeout,
            description=args.description,
            status=TaskStatus.PAUSED if args.paused else TaskStatus.ACTIVE,
            enable_webhook=args.webhook,
            enable_email_notification=args.email,
            email_on_success=args.email_on_success,
            email_on_failure=not args.no_email_on_failure,
            log_output=not args.no_log_output
        )
        manager.shutdown()
    except (CronManagerError, ValueError) as e:
        logger.error(f"Failed to add task: {e}")
        sys.exit(1)

    logger.info(f"Added task '{task.name}' ({task.id})")
    logger.info(f"Command: {task.command}")
    logger.info(f"Schedule: {task.schedule} ({humanize(task.schedule)})")
    if task.is_active:
        logger.info(f"Next run: {_format_time(task.next_run)}")
    logger.info(RESTART_HINT)


def cmd_remove(args):
    """Remove a task."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager.from_config(config)
        task = manager.delete_task(_resolve_task_id(manager, args.task_id))
        manager.shutdown()
    except CronManagerError as e:
        logger.error(f"Failed to remove task: {e}")
        sys.exit(1)

    logger.info(f"Removed task '{task.name}'")
    logger.info(RESTART_HINT)


def cmd_enable(args):
    """Activate a task (also clears the error state)."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager.from_config(config)
        task = manager.start_task(_resolve_task_id(manager, args.task_id))
        manager.shutdown()
    except CronManagerError as e:
        logger.error(f"Failed to enable task: {e}")
        sys.exit(1)

    logger.info(f"Enabled task '{task.name}', next run: {_format_time(task.next_run)}")
    logger.info(RESTART_HINT)


def cmd_disable(args):
    """Pause a task."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager.from_config(config)
        task = manager.stop_task(_resolve_task_id(manager, args.task_id))
        manager.shutdown()
    except CronManagerError as e:
        logger.error(f"Failed to disable task: {e}")
        sys.exit(1)

    logger.info(f"Disabled task '{task.name}'")
    logger.info(RESTART_HINT)


def cmd_run_now(args):
    """Run a task once, in the foreground."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager.from_config(config)
        task_id = _resolve_task_id(manager, args.task_id)
        task = manager.get_task(task_id)
        logger.info(f"Running task '{task.name}' now...")
        logger.info(f"Command: {task.command}")
        outcome = manager.run_now(task_id)
        # Wait for webhook/email deliveries before exiting
        manager.shutdown(wait=True)
    except CronManagerError as e:
        logger.error(f"Failed to run task: {e}")
        sys.exit(1)

    duration = outcome.duration_ms / 1000
    if outcome.succeeded:
        print()
        print(outcome.output)
        print()
        logger.info(f"Task '{task.name}' completed successfully in {duration:.1f}s")
    else:
        if outcome.output:
            print()
            print(outcome.output)
            print()
        logger.error(f"Task '{task.name}' failed after {duration:.1f}s: {outcome.error_message}")
        sys.exit(1)


def cmd_webhook(args):
    """Record a webhook received from an external system."""
    config = _load_config(args)
    setup_logging(verbose=args.verbose)

    try:
        details = json.loads(args.details) if args.details else None
    except json.JSONDecodeError as e:
        logger.error(f"Invalid --details JSON: {e}")
        sys.exit(1)

    try:
        manager = TaskManager.from_config(config)
        event = manager.record_webhook(_resolve_task_id(manager, args.task_id), args.status, details)
        manager.shutdown()
    except (CronManagerError, ValueError) as e:
        logger.error(f"Failed to record webhook: {e}")
        sys.exit(1)

    logger.info(event.message)


def cmd_logs(args):
    """Show recent activity log events."""
    setup_logging(verbose=args.verbose)

    try:
        manager = TaskManager(_store_only(args))
        task_id = _resolve_task_id(manager, args.task) if args.task else None
        events = manager.recent_events(limit=args.limit, task_id=task_id)
    except CronManagerError as e:
        logger.error(f"Failed to read logs: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps([e.to_dict() for e in events], indent=2))
        return

    if not events:
        print("No activity recorded yet.")
        return

    colors = {'task_failed': '\033[91m', 'webhook_failed': '\033[93m',
              'email_failed': '\033[93m', 'task_executed': '\033[92m'}
    for event in reversed(events):
        line = f"{_format_time(event.created_at)} {event.type.value:<16} {event.message}"
        color = colors.get(event.type.value) if args.color else None
        print(f"{color}{line}\033[0m" if color else line)

    print(f"\n--- Showing {len(events)} event(s) ---")


def cmd_next(args):
    """Show the next trigger times of a cron expression."""
    config = _load_config(args)
    timezone = args.timezone or config.timezone

    try:
        times = upcoming_triggers(args.expression, args.count, tz=timezone)
    except CronManagerError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\n{args.expression}: {humanize(args.expression)} ({timezone})\n")
    for moment in times:
        print(f"  {moment.strftime('%Y-%m-%d %H:%M %Z (%a)')}")
    print()


def cmd_stats(args):
    """Show dashboard counters."""
    setup_logging(verbose=args.verbose)

    stats = TaskManager(_store_only(args)).stats()
    if args.json:
        print(json.dumps(stats, indent=2))
        return

    for key, value in stats.items():
        print(f"{key.replace('_', ' ').capitalize():<18} {value}")


def cmd_init(args):
    """Initialize configuration, log directory and database."""
    setup_logging(verbose=args.verbose)

    try:
        config = _load_config(args)
        config.save()
        logger.info(f"Initialized configuration at: {config.config_path}")

        log_dir = Path(config.logging.file).expanduser().parent
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created log directory: {log_dir}")

        _store_only(args)
        logger.info(f"Initialized database: {config.db_path}")

    except OSError as e:
        logger.error(f"Failed to initialize: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    config = _load_config(args)

    print(f"\nConfiguration file: {config.config_path}")
    print(f"Database: {config.db_path}")
    print(f"Timezone: {config.timezone}")
    print(f"Workers: {config.max_workers}")
    print(f"Misfire grace: {config.misfire_grace_seconds} seconds")
    print(f"Webhook URL: {config.webhook.url or 'not configured'}")
    print(f"SMTP: {config.smtp.host}:{config.smtp.port} "
          f"({'configured' if config.smtp.is_configured else 'not configured'})")
    print(f"Logging level: {config.logging.level}")
    print(f"Log file: {config.logging.file}")

    errors = config.validate()
    if errors:
        print("\nConfiguration problems:")
        for error in errors:
            print(f"  - {error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cron-manager',
        description="Cron Manager - Run shell commands on cron schedules with notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to configuration file'
    )
    parser.add_argument(
        '--db',
        type=str,
        help='Path to the task database (overrides configuration)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='subcommand', help='Commands')

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the scheduler')
    start_parser.add_argument(
        '--foreground',
        action='store_true',
        help='Run in foreground (blocking mode)'
    )
    start_parser.add_argument(
        '--workers',
        type=int,
        help='Pooled worker threads for task runs (default: from configuration)'
    )
    start_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Stop the scheduler')
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser('list', help='List all tasks')
    list_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    list_parser.set_defaults(func=cmd_list)

    # Add command
    add_parser = subparsers.add_parser('add', help='Add a new task')
    add_parser.add_argument('name', help='Task name')
    add_parser.add_argument(
        '--command',
        required=True,
        help='Shell command to execute (e.g., "backup.sh --full")'
    )
    add_parser.add_argument('--cron', required=True, help='Cron expression (e.g., "0 2 * * *")')
    add_parser.add_argument('--timeout', type=int, default=300,
                            help='Command timeout in seconds (default: 300)')
    add_parser.add_argument('--description', type=str, help='Human-readable description')
    add_parser.add_argument('--webhook', action='store_true', help='Send a webhook after each run')
    add_parser.add_argument('--email', action='store_true', help='Enable email notifications')
    add_parser.add_argument('--email-on-success', action='store_true',
                            help='Also email on successful runs')
    add_parser.add_argument('--no-email-on-failure', action='store_true',
                            help='Do not email on failed runs')
    add_parser.add_argument('--no-log-output', action='store_true',
                            help='Do not store command output in the activity log')
    add_parser.add_argument('--paused', action='store_true', help='Create the task paused')
    add_parser.set_defaults(func=cmd_add)

    remove_parser = subparsers.add_parser('remove', help='Remove a task')
    remove_parser.add_argument('task_id', help='Task ID (or unique prefix)')
    remove_parser.set_defaults(func=cmd_remove)

    enable_parser = subparsers.add_parser('enable', help='Activate a task')
    enable_parser.add_argument('task_id', help='Task ID (or unique prefix)')
    enable_parser.set_defaults(func=cmd_enable)

    disable_parser = subparsers.add_parser('disable', help='Pause a task')
    disable_parser.add_argument('task_id', help='Task ID (or unique prefix)')
    disable_parser.set_defaults(func=cmd_disable)

    run_now_parser = subparsers.add_parser('run-now', help='Run a task once immediately')
    run_now_parser.add_argument('task_id', help='Task ID (or unique prefix)')
    run_now_parser.set_defaults(func=cmd_run_now)

    webhook_parser = subparsers.add_parser('webhook', help='Record a webhook received for a task')
    webhook_parser.add_argument('task_id', help='Task ID (or unique prefix)')
    webhook_parser.add_argument('--status', required=True, help='Status reported by the sender')
    webhook_parser.add_argument('--details', type=str, help='Extra details as a JSON object')
    webhook_parser.set_defaults(func=cmd_webhook)

    # Logs command
    logs_parser = subparsers.add_parser('logs', help='View activity log')
    logs_parser.add_argument('--task', type=str, help='Filter by task ID')
    logs_parser.add_argument('--limit', '-n', type=int, default=50,
                             help='Show last N events (default: 50)')
    logs_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    logs_parser.add_argument('--color', action='store_true', help='Colorize output')
    logs_parser.set_defaults(func=cmd_logs)

    next_parser = subparsers.add_parser('next', help='Show upcoming trigger times of a cron expression')
    next_parser.add_argument('expression', help='Cron expression (quote it)')
    next_parser.add_argument('-n', '--count', type=int, default=5,
                             help='Number of trigger times (default: 5)')
    next_parser.add_argument('--timezone', type=str, help='Time zone (default: from configuration)')
    next_parser.set_defaults(func=cmd_next)

    stats_parser = subparsers.add_parser('stats', help='Show task counters')
    stats_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    stats_parser.set_defaults(func=cmd_stats)

    init_parser = subparsers.add_parser('init', help='Initialize configuration and database')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.subcommand:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
