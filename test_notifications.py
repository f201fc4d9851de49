"""
Tests for the notification fan-out and the HTTP/SMTP transports.
"""

from concurrent.futures import wait
from datetime import datetime, timezone

import pytest
import requests

from conftest import RecordingEmailTransport, RecordingWebhookTransport
from cronmanager.config import SmtpConfig
from cronmanager.errors import ChannelDeliveryError
from cronmanager.models import EventType, ExecutionOutcome, RunResult, Task
from cronmanager.notifications import (
    USER_AGENT,
    NotificationFanout,
    RequestsWebhookTransport,
    SmtpEmailTransport,
    build_webhook_payload,
    render_task_email,
)

WHEN = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


def _task(**overrides):
    fields = dict(
        id="t1", name="backup", command="backup.sh", schedule="0 2 * * *",
        description="Nightly backup", enable_webhook=True,
        enable_email_notification=True, email_on_success=True, email_on_failure=True
    )
    fields.update(overrides)
    return Task(**fields)


def _success(output="done"):
    return ExecutionOutcome(task_id="t1", result=RunResult.SUCCESS, duration_ms=120,
                            timestamp=WHEN, output=output, exit_code=0)


def _failure():
    return ExecutionOutcome(task_id="t1", result=RunResult.FAILURE, duration_ms=80,
                            timestamp=WHEN, error_message="Command failed with exit code 1",
                            exit_code=1)


def _types(store):
    return {e.type for e in store.list_events(limit=None)}


def test_webhook_failure_does_not_block_email_or_outcome_event(store, broadcaster):
    webhook = RecordingWebhookTransport(fail=True)
    email = RecordingEmailTransport()
    fanout = NotificationFanout(store, broadcaster, webhook_url="https://hooks.example.com",
                                webhook_transport=webhook, email_transport=email,
                                email_recipients=["ops@example.com"])
    try:
        futures = fanout.notify(_task(), _failure())
        wait(futures)
    finally:
        fanout.shutdown()

    assert all(f.exception() is None for f in futures)
    assert len(email.sent) == 1
    assert _types(store) == {EventType.TASK_FAILED, EventType.WEBHOOK_FAILED, EventType.EMAIL_SENT}


def test_email_failure_is_recorded(store):
    email = RecordingEmailTransport(fail=True)
    fanout = NotificationFanout(store, email_transport=email, email_recipients=["ops@example.com"])
    try:
        wait(fanout.notify(_task(enable_webhook=False), _failure()))
    finally:
        fanout.shutdown()

    failed = store.list_events(event_type=EventType.EMAIL_FAILED)
    assert len(failed) == 1
    assert "connection refused" in failed[0].message


def test_outcome_event_is_written_inline(store, broadcaster):
    received = []
    broadcaster.subscribe(received.append)
    fanout = NotificationFanout(store, broadcaster)
    try:
        futures = fanout.notify(_task(), _success())
    finally:
        fanout.shutdown()

    assert futures == []
    events = store.list_events()
    assert [e.type for e in events] == [EventType.TASK_EXECUTED]
    assert events[0].details == {'duration': 120, 'output': 'done'}
    assert received == [{'type': 'log', 'data': events[0].to_dict()}]


@pytest.mark.parametrize("flags,outcome,expect_email", [
    (dict(email_on_success=False), _success(), False),
    (dict(email_on_success=True), _success(), True),
    (dict(email_on_failure=False), _failure(), False),
    (dict(email_on_failure=True), _failure(), True),
    (dict(enable_email_notification=False), _failure(), False),
])
def test_email_flags_gate_delivery(store, flags, outcome, expect_email):
    email = RecordingEmailTransport()
    fanout = NotificationFanout(store, email_transport=email, email_recipients=["ops@example.com"])
    try:
        wait(fanout.notify(_task(enable_webhook=False, **flags), outcome))
    finally:
        fanout.shutdown()

    assert bool(email.sent) == expect_email


def test_webhook_needs_flag_and_url(store):
    webhook = RecordingWebhookTransport()
    no_url = NotificationFanout(store, webhook_transport=webhook)
    with_url = NotificationFanout(store, webhook_url="https://hooks.example.com",
                                  webhook_transport=webhook)
    try:
        assert no_url.notify(_task(enable_email_notification=False), _success()) == []
        assert with_url.notify(_task(enable_webhook=False, enable_email_notification=False),
                               _success()) == []
        wait(with_url.notify(_task(enable_email_notification=False), _success()))
    finally:
        no_url.shutdown()
        with_url.shutdown()

    assert len(webhook.calls) == 1
    assert EventType.WEBHOOK_SENT in _types(store)


def test_unconfigured_email_is_skipped_silently(store):
    email = RecordingEmailTransport(configured=False)
    fanout = NotificationFanout(store, email_transport=email, email_recipients=["ops@example.com"])
    try:
        wait(fanout.notify(_task(enable_webhook=False), _failure()))
    finally:
        fanout.shutdown()

    assert _types(store) == {EventType.TASK_FAILED}


def test_webhook_payload_shape():
    payload = build_webhook_payload(_task(), _success())
    assert payload == {
        'taskId': 't1',
        'taskName': 'backup',
        'status': 'success',
        'timestamp': WHEN.isoformat(),
        'details': {'duration': 120, 'output': 'done'},
    }

    failed = build_webhook_payload(_task(), _failure())
    assert failed['status'] == 'error'
    assert failed['details'] == {'duration': 80, 'error': 'Command failed with exit code 1'}


def test_email_render_caps_output_and_escapes():
    subject, body = render_task_email(_task(command="a < b"), _success(output="y" * 2000))
    assert "backup" in subject
    assert "a &lt; b" in body
    assert "Nightly backup" in body
    assert "y" * 500 in body
    assert "y" * 501 not in body


class _FakeResponse:
    def __init__(self, status_code, reason="OK"):
        self.status_code = status_code
        self.reason = reason


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.requests.append((url, data, headers, timeout))
        if self.error:
            raise self.error
        return self.response


def test_requests_transport_posts_json():
    session = _FakeSession(_FakeResponse(204))
    transport = RequestsWebhookTransport(timeout_seconds=5, session=session)

    assert transport.post("https://hooks.example.com", {'taskId': 't1'}) == 204
    url, data, headers, timeout = session.requests[0]
    assert data == '{"taskId": "t1"}'
    assert headers['User-Agent'] == USER_AGENT
    assert headers['Content-Type'] == 'application/json'
    assert timeout == 5


def test_requests_transport_error_status():
    transport = RequestsWebhookTransport(session=_FakeSession(_FakeResponse(500, "Server Error")))
    with pytest.raises(ChannelDeliveryError) as excinfo:
        transport.post("https://hooks.example.com", {})
    assert "500" in str(excinfo.value)


def test_requests_transport_connection_error():
    session = _FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(ChannelDeliveryError):
        RequestsWebhookTransport(session=session).post("https://hooks.example.com", {})


def test_smtp_transport_without_credentials_returns_false():
    transport = SmtpEmailTransport(SmtpConfig())
    assert not transport.is_configured
    assert transport.send(["ops@example.com"], "subject", "<p>body</p>") is False


def test_smtp_default_recipients_feed_the_fanout(store):
    config = SmtpConfig(user="u", password="p", from_email="cron@example.com",
                        to_emails=["a@example.com", "b@example.com"])
    fanout = NotificationFanout(store, email_transport=SmtpEmailTransport(config))
    try:
        assert fanout.email_recipients == ["a@example.com", "b@example.com"]
    finally:
        fanout.shutdown()
