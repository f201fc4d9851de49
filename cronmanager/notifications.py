"""
Notification fan-out for task outcomes.

Supports three channels:
- log: the outcome event, appended to the log sink and broadcast live
- webhook: JSON POST to a configured URL
- email: HTML summary through an SMTP transport

Webhook and email deliveries run on a worker pool as futures. Every channel
catches its own failures and records them as a failed-channel event, so one
channel can never stop another or reach the caller.
"""

import html
import json
import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Tuple

import requests

from cronmanager.broadcast import EventBroadcaster
from cronmanager.config import SmtpConfig
from cronmanager.errors import ChannelDeliveryError
from cronmanager.models import ActivityLogEvent, EventType, ExecutionOutcome, Task

logger = logging.getLogger(__name__)

USER_AGENT = "CronManager/1.0"
EMAIL_OUTPUT_CHARS = 500


class RequestsWebhookTransport:
    """Single-attempt JSON POST."""

    def __init__(self, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def post(self, url: str, payload: Dict[str, Any]) -> int:
        """
        POST a JSON payload.

        Returns:
            HTTP status code

        Raises:
            ChannelDeliveryError: On connection errors or a 4xx/5xx response
        """
        try:
            response = self.session.post(
                url,
                data=json.dumps(payload, default=str),
                headers={
                    'Content-Type': 'application/json',
                    'User-Agent': USER_AGENT
                },
                timeout=self.timeout_seconds
            )
        except requests.RequestException as e:
            raise ChannelDeliveryError('webhook', str(e)) from e

        if response.status_code >= 400:
            raise ChannelDeliveryError(
                'webhook', f"{response.status_code} {response.reason}"
            )
        return response.status_code


class SmtpEmailTransport:
    """SMTP sender. Without credentials every send is skipped, not failed."""

    def __init__(self, config: SmtpConfig):
        self.config = config

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    @property
    def default_recipients(self) -> List[str]:
        return list(self.config.to_emails)

    def send(self, recipients: List[str], subject: str, body: str) -> bool:
        """
        Send an HTML email.

        Returns:
            True if sent, False if the transport is not configured

        Raises:
            ChannelDeliveryError: If the SMTP exchange fails
        """
        if not self.is_configured or not recipients:
            logger.debug("Email transport not configured - skipping email")
            return False

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"Cron Manager <{self.config.from_email}>"
        msg['To'] = ', '.join(recipients)
        msg.attach(MIMEText(body, 'html'))

        try:
            if self.config.port == 465:
                with smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=30) as server:
                    server.login(self.config.user, self.config.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(self.config.host, self.config.port, timeout=30) as server:
                    server.starttls()
                    server.login(self.config.user, self.config.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryError('email', str(e)) from e

        return True


def build_webhook_payload(task: Task, outcome: ExecutionOutcome) -> Dict[str, Any]:
    details: Dict[str, Any] = {'duration': outcome.duration_ms}
    if outcome.succeeded:
        details['output'] = outcome.output
    else:
        details['error'] = outcome.error_message

    return {
        'taskId': task.id,
        'taskName': task.name,
        'status': 'success' if outcome.succeeded else 'error',
        'timestamp': outcome.timestamp.isoformat(),
        'details': details,
    }


def render_task_email(task: Task, outcome: ExecutionOutcome) -> Tuple[str, str]:
    """
    Render the notification email for one outcome.

    Returns:
        (subject, html_body)
    """
    ok = outcome.succeeded
    subject = f"[Cron Manager] {'✅' if ok else '❌'} {task.name}"
    status_text = "completed successfully" if ok else "failed"
    color = "#22c55e" if ok else "#ef4444"

    details: Dict[str, Any] = {'duration_ms': outcome.duration_ms}
    if ok:
        details['output'] = (outcome.output or '')[:EMAIL_OUTPUT_CHARS]
    else:
        details['error'] = outcome.error_message

    rows = [
        ("Name", task.name),
        ("Description", task.description or "Not provided"),
        ("Command", task.command),
        ("Cron expression", task.schedule),
        ("Time", outcome.timestamp.strftime("%Y-%m-%d %H:%M:%S %Z")),
    ]
    table = "\n".join(
        f'<tr><td style="padding: 8px 0; font-weight: bold; color: #6b7280;">{label}:</td>'
        f'<td style="padding: 8px 0; color: #374151;">{html.escape(str(value))}</td></tr>'
        for label, value in rows
    )

    body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="background: {color}; color: white; padding: 20px; border-radius: 8px 8px 0 0;">
            <h1 style="margin: 0; font-size: 24px;">Task {status_text}</h1>
        </div>
        <div style="background: #f9fafb; padding: 20px; border: 1px solid #e5e7eb;">
            <h2 style="margin-top: 0; color: #374151;">Task details</h2>
            <table style="width: 100%; border-collapse: collapse;">
            {table}
            </table>
        </div>
        <div style="background: white; padding: 20px; border: 1px solid #e5e7eb; border-top: none;">
            <h3 style="margin-top: 0; color: #374151;">Additional information</h3>
            <pre style="background: #f3f4f6; padding: 12px; border-radius: 4px; font-size: 12px;">{html.escape(json.dumps(details, indent=2, default=str))}</pre>
        </div>
        <div style="background: #f9fafb; padding: 15px; border: 1px solid #e5e7eb; border-top: none; border-radius: 0 0 8px 8px; text-align: center;">
            <p style="margin: 0; font-size: 12px; color: #6b7280;">Sent automatically by Cron Manager</p>
        </div>
    </div>
    """
    return subject, body


class NotificationFanout:
    """
    Dispatches one outcome to the log sink, the webhook and email.

    Usage:
        fanout = NotificationFanout(store, broadcaster, webhook_url=url,
                                    webhook_transport=RequestsWebhookTransport())
        futures = fanout.notify(task, outcome)
    """

    def __init__(
        self,
        log_sink,
        broadcaster: Optional[EventBroadcaster] = None,
        webhook_url: Optional[str] = None,
        webhook_transport=None,
        email_transport=None,
        email_recipients: Optional[List[str]] = None,
        log_output_chars: int = 1000,
        max_workers: int = 4
    ):
        """
        Initialize the fan-out.

        Args:
            log_sink: Object with append(ActivityLogEvent)
            broadcaster: Real-time broadcaster (optional)
            webhook_url: Destination of webhook POSTs; no URL disables the channel
            webhook_transport: Object with post(url, payload) -> status code
            email_transport: Object with send(recipients, subject, body) -> bool
            email_recipients: Recipients (default: the transport's own list)
            log_output_chars: Cap on output copied into the outcome event
            max_workers: Threads used for webhook/email delivery
        """
        self.log_sink = log_sink
        self.broadcaster = broadcaster
        self.webhook_url = webhook_url
        self.webhook_transport = webhook_transport
        self.email_transport = email_transport
        if email_recipients is None and email_transport is not None:
            email_recipients = getattr(email_transport, 'default_recipients', [])
        self.email_recipients = list(email_recipients or [])
        self.log_output_chars = log_output_chars
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='notify')

    def notify(self, task: Task, outcome: ExecutionOutcome) -> List[Future]:
        """
        Fan an outcome out to every enabled channel.

        The outcome event is recorded inline; webhook and email are handed
        to the worker pool.

        Returns:
            Futures of the asynchronous deliveries (already error-guarded)
        """
        self._record_outcome(task, outcome)

        futures = []
        if self._webhook_enabled(task):
            futures.append(self._submit(self._deliver_webhook, task, outcome))
        if self._email_enabled(task, outcome):
            futures.append(self._submit(self._deliver_email, task, outcome))
        return futures

    def emit(self, event: ActivityLogEvent) -> None:
        """Append an event to the log sink and broadcast it; never raises."""
        try:
            self.log_sink.append(event)
        except Exception as e:
            logger.error(f"Failed to append {event.type.value} event for task {event.task_id}: {e}")
        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(event)
            except Exception as e:
                logger.warning(f"Failed to broadcast {event.type.value} event: {e}")

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _submit(self, fn, task: Task, outcome: ExecutionOutcome) -> Future:
        future = self._pool.submit(fn, task, outcome)
        future.add_done_callback(self._log_unexpected)
        return future

    @staticmethod
    def _log_unexpected(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Notification delivery crashed: {error}")

    def _webhook_enabled(self, task: Task) -> bool:
        return bool(task.enable_webhook and self.webhook_url and self.webhook_transport)

    def _email_enabled(self, task: Task, outcome: ExecutionOutcome) -> bool:
        if not task.enable_email_notification or self.email_transport is None:
            return False
        return task.email_on_success if outcome.succeeded else task.email_on_failure

    def _record_outcome(self, task: Task, outcome: ExecutionOutcome) -> None:
        if outcome.succeeded:
            details: Dict[str, Any] = {'duration': outcome.duration_ms}
            if task.log_output:
                details['output'] = (outcome.output or '')[:self.log_output_chars]
            event = ActivityLogEvent(
                task_id=task.id,
                type=EventType.TASK_EXECUTED,
                message=f"Task '{task.name}' executed successfully",
                details=details,
                created_at=outcome.timestamp
            )
        else:
            details = {
                'error': outcome.error_message,
                'duration': outcome.duration_ms,
                'timed_out': outcome.timed_out,
            }
            if outcome.exit_code is not None:
                details['exit_code'] = outcome.exit_code
            event = ActivityLogEvent(
                task_id=task.id,
                type=EventType.TASK_FAILED,
                message=f"Task '{task.name}' failed: {outcome.error_message}",
                details=details,
                created_at=outcome.timestamp
            )
        self.emit(event)

    def _deliver_webhook(self, task: Task, outcome: ExecutionOutcome) -> bool:
        payload = build_webhook_payload(task, outcome)
        if payload['details'].get('output'):
            payload['details']['output'] = payload['details']['output'][:self.log_output_chars]

        try:
            status_code = self.webhook_transport.post(self.webhook_url, payload)
        except Exception as e:
            logger.warning(f"Webhook for task '{task.name}' failed: {e}")
            self.emit(ActivityLogEvent(
                task_id=task.id,
                type=EventType.WEBHOOK_FAILED,
                message=f"Failed to send webhook: {e}",
                details={'url': self.webhook_url, 'error': str(e)}
            ))
            return False

        logger.info(f"Webhook sent for task '{task.name}' ({status_code})")
        self.emit(ActivityLogEvent(
            task_id=task.id,
            type=EventType.WEBHOOK_SENT,
            message=f"Webhook sent to {self.webhook_url}",
            details={'status': status_code}
        ))
        return True

    def _deliver_email(self, task: Task, outcome: ExecutionOutcome) -> bool:
        subject, body = render_task_email(task, outcome)

        try:
            sent = self.email_transport.send(self.email_recipients, subject, body)
        except Exception as e:
            logger.warning(f"Email for task '{task.name}' failed: {e}")
            self.emit(ActivityLogEvent(
                task_id=task.id,
                type=EventType.EMAIL_FAILED,
                message=f"Failed to send email notification: {e}",
                details={'recipients': self.email_recipients, 'error': str(e)}
            ))
            return False

        if not sent:
            logger.debug(f"Email for task '{task.name}' skipped - transport not configured")
            return False

        logger.info(f"Email sent for task '{task.name}' to {', '.join(self.email_recipients)}")
        self.emit(ActivityLogEvent(
            task_id=task.id,
            type=EventType.EMAIL_SENT,
            message=f"Email notification sent to {', '.join(self.email_recipients)}",
            details={'subject': subject}
        ))
        return True
