"""
Shared pytest fixtures: temporary task stores, recording transports and a
scheduler that is always shut down after the test.
"""

import threading

import pytest

from cronmanager.broadcast import EventBroadcaster
from cronmanager.errors import ChannelDeliveryError
from cronmanager.notifications import NotificationFanout
from cronmanager.pipeline import ExecutionPipeline
from cronmanager.runner import CommandRunner
from cronmanager.service import CronScheduler
from cronmanager.store import SqliteTaskStore


class RecordingWebhookTransport:
    """Records every POST; raises ChannelDeliveryError when `fail` is set."""

    def __init__(self, fail=False, status_code=200):
        self.fail = fail
        self.status_code = status_code
        self.calls = []
        self._lock = threading.Lock()

    def post(self, url, payload):
        with self._lock:
            self.calls.append((url, payload))
        if self.fail:
            raise ChannelDeliveryError('webhook', "503 Service Unavailable")
        return self.status_code


class RecordingEmailTransport:
    """Records every email; `configured=False` behaves like missing SMTP credentials."""

    def __init__(self, configured=True, fail=False):
        self.configured = configured
        self.fail = fail
        self.sent = []
        self._lock = threading.Lock()

    def send(self, recipients, subject, body):
        if not self.configured:
            return False
        if self.fail:
            raise ChannelDeliveryError('email', "connection refused")
        with self._lock:
            self.sent.append((list(recipients), subject, body))
        return True


@pytest.fixture
def store(tmp_path):
    return SqliteTaskStore(tmp_path / "tasks.db")


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def webhook():
    return RecordingWebhookTransport()


@pytest.fixture
def email():
    return RecordingEmailTransport()


@pytest.fixture
def fanout(store, broadcaster, webhook, email):
    fanout = NotificationFanout(
        store,
        broadcaster,
        webhook_url="https://hooks.example.com/cron",
        webhook_transport=webhook,
        email_transport=email,
        email_recipients=["ops@example.com"]
    )
    yield fanout
    fanout.shutdown(wait=True)


@pytest.fixture
def pipeline(store, fanout):
    return ExecutionPipeline(store, CommandRunner(), fanout)


@pytest.fixture
def scheduler(store, pipeline):
    scheduler = CronScheduler(store, pipeline, timezone="UTC", max_workers=2)
    yield scheduler
    scheduler.shutdown(wait=False)
