"""
Tests for the real-time event broadcaster.
"""

from cronmanager.broadcast import EventBroadcaster
from cronmanager.models import ActivityLogEvent, EventType


def test_publish_reaches_every_subscriber():
    broadcaster = EventBroadcaster()
    first, second = [], []
    broadcaster.subscribe(first.append)
    broadcaster.subscribe(second.append)

    event = ActivityLogEvent(task_id="t1", type=EventType.TASK_CREATED, message="created")
    assert broadcaster.publish(event) == 2
    assert first == second == [{'type': 'log', 'data': event.to_dict()}]


def test_failing_subscriber_is_dropped():
    broadcaster = EventBroadcaster()
    received = []

    def broken(message):
        raise ConnectionError("client went away")

    broadcaster.subscribe(broken)
    broadcaster.subscribe(received.append)

    assert broadcaster.publish_stats({'active_tasks': 1}) == 1
    assert broadcaster.subscriber_count == 1
    assert received == [{'type': 'stats', 'data': {'active_tasks': 1}}]


def test_unsubscribe_and_no_buffering():
    broadcaster = EventBroadcaster()
    assert broadcaster.publish_stats({}) == 0

    received = []
    token = broadcaster.subscribe(received.append)
    assert broadcaster.unsubscribe(token)
    assert not broadcaster.unsubscribe(token)
    broadcaster.publish_stats({})
    assert received == []
