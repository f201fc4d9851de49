"""
Tests for timer arming, disarming and firing.
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from cronmanager.errors import InvalidScheduleError
from cronmanager.models import RunResult, TaskStatus
from cronmanager.service import CronScheduler, TimerRegistry

UTC = timezone.utc


def _active(store, schedule="*/5 * * * *", command="echo ok", **fields):
    return store.create_task("job", command, schedule, status=TaskStatus.ACTIVE, **fields)


def test_arm_installs_one_timer_and_records_next_run(store, scheduler):
    task = _active(store, "0 0 * * *")
    now = datetime(2025, 1, 1, 10, 0, tzinfo=UTC)

    next_run = scheduler.arm(task, now=now)

    assert next_run == datetime(2025, 1, 2, 0, 0, tzinfo=UTC)
    assert scheduler.is_armed(task.id)
    assert scheduler.armed_task_ids() == [task.id]
    assert store.get(task.id).next_run == next_run


def test_arm_twice_replaces_the_timer(store, scheduler):
    task = _active(store)
    scheduler.arm(task)
    scheduler.arm(task)

    assert len(scheduler.scheduler.get_jobs()) == 1
    assert scheduler.armed_task_ids() == [task.id]


def test_disarm_is_idempotent(store, scheduler):
    task = _active(store)
    scheduler.arm(task)

    assert scheduler.disarm(task.id) is True
    assert not scheduler.is_armed(task.id)
    assert scheduler.next_fire_time(task.id) is None
    assert scheduler.disarm(task.id) is False
    assert scheduler.disarm("never-armed") is False


def test_invalid_schedule_is_rejected_and_not_armed(store, scheduler):
    task = _active(store, schedule="61 * * * *")

    with pytest.raises(InvalidScheduleError):
        scheduler.arm(task)
    assert not scheduler.is_armed(task.id)
    assert scheduler.scheduler.get_jobs() == []


def test_rearm_uses_the_latest_schedule(store, scheduler):
    task = _active(store, "0 0 * * *")
    scheduler.arm(task)

    task.schedule = "30 6 * * *"
    scheduler.arm(task)

    fire = scheduler.next_fire_time(task.id)
    assert (fire.hour, fire.minute) == (6, 30)
    assert str(scheduler.scheduler.get_job(task.id).trigger) == "cron[30 6 * * *]"


def test_concurrent_edits_leave_one_timer(store, scheduler):
    task = _active(store)
    schedules = [f"{minute} * * * *" for minute in range(20)]
    barrier = threading.Barrier(len(schedules))

    def edit(schedule):
        local = store.get(task.id)
        local.schedule = schedule
        barrier.wait()
        scheduler.arm(local)

    threads = [threading.Thread(target=edit, args=(s,)) for s in schedules]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    jobs = scheduler.scheduler.get_jobs()
    assert len(jobs) == 1
    assert str(jobs[0].trigger)[5:-1] in schedules
    assert scheduler.armed_task_ids() == [task.id]

    task.schedule = "59 23 * * *"
    scheduler.arm(task)
    assert str(scheduler.scheduler.get_job(task.id).trigger) == "cron[59 23 * * *]"


def test_start_arms_only_active_tasks(store, scheduler):
    active = _active(store)
    paused = store.create_task("paused", "echo", "*/5 * * * *")
    errored = store.create_task("errored", "echo", "*/5 * * * *", status=TaskStatus.ERROR)
    broken = _active(store, schedule="not a cron")

    assert scheduler.start() == 1

    assert scheduler.is_armed(active.id)
    assert not scheduler.is_armed(paused.id)
    assert not scheduler.is_armed(errored.id)
    assert not scheduler.is_armed(broken.id)


def test_tick_runs_active_task_and_keeps_timer(store, scheduler):
    task = _active(store)
    scheduler.arm(task)

    outcome = scheduler.tick(task.id)

    assert outcome.result == RunResult.SUCCESS
    assert scheduler.is_armed(task.id)
    saved = store.get(task.id)
    assert saved.run_count == 1
    assert saved.next_run is not None


def test_tick_disarms_task_that_errored(store, scheduler):
    task = _active(store, command="exit 1")
    scheduler.arm(task)

    outcome = scheduler.tick(task.id)

    assert outcome.result == RunResult.FAILURE
    assert store.get(task.id).status == TaskStatus.ERROR
    assert not scheduler.is_armed(task.id)


def test_tick_for_paused_or_deleted_task_disarms_without_running(store, scheduler):
    task = _active(store)
    scheduler.arm(task)
    store.set_status(task.id, TaskStatus.PAUSED)

    assert scheduler.tick(task.id) is None
    assert not scheduler.is_armed(task.id)
    assert store.get(task.id).run_count == 0

    other = _active(store)
    scheduler.arm(other)
    store.delete_task(other.id)
    assert scheduler.tick(other.id) is None
    assert not scheduler.is_armed(other.id)


def test_stale_tick_cannot_disarm_newer_timer(store, scheduler):
    task = _active(store)
    scheduler.arm(task)
    stale = scheduler.registry.generation(task.id)
    scheduler.arm(task)
    store.set_status(task.id, TaskStatus.PAUSED)

    assert scheduler.tick(task.id, generation=stale) is None
    assert scheduler.is_armed(task.id)


def test_shutdown_clears_registry(store, scheduler):
    scheduler.arm(_active(store))
    scheduler.shutdown(wait=False)

    assert not scheduler.running
    assert scheduler.armed_task_ids() == []


def test_timer_registry_generations():
    registry = TimerRegistry()
    assert registry.generation("a") is None

    first = registry.register("a")
    second = registry.register("a")
    assert second == first + 1
    assert registry.generation("a") == second
    assert "a" in registry and len(registry) == 1

    assert registry.unregister("a") is True
    assert registry.unregister("a") is False
    assert registry.register("a") == second + 1


def test_queued_tick_after_disarm_does_not_run(store, scheduler):
    task = _active(store)
    scheduler.arm(task)
    generation = scheduler.registry.generation(task.id)
    scheduler.disarm(task.id)

    assert scheduler.tick(task.id, generation) is None
    assert scheduler.tick(task.id) is None
    saved = store.get(task.id)
    assert saved.run_count == 0
    assert saved.status == TaskStatus.ACTIVE


def test_tick_from_replaced_timer_does_not_run(store, scheduler):
    task = _active(store, "0 0 * * *")
    scheduler.arm(task)
    stale = scheduler.registry.generation(task.id)

    task.schedule = "30 6 * * *"
    scheduler.arm(task)

    assert scheduler.tick(task.id, stale) is None
    assert store.get(task.id).run_count == 0
    assert scheduler.is_armed(task.id)

    current = scheduler.registry.generation(task.id)
    assert scheduler.tick(task.id, current).result == RunResult.SUCCESS
    assert store.get(task.id).run_count == 1


def test_arm_refuses_task_that_is_not_active(store, scheduler):
    task = _active(store)
    scheduler.arm(task)

    task.status = TaskStatus.PAUSED
    assert scheduler.arm(task) is None
    assert not scheduler.is_armed(task.id)
    assert scheduler.scheduler.get_job(task.id) is None

    paused = store.create_task("paused", "echo", "*/5 * * * *")
    assert scheduler.arm(paused) is None
    assert scheduler.armed_task_ids() == []


def test_timer_dropped_by_backend_leaves_registry(store, scheduler):
    task = _active(store)
    scheduler.arm(task)

    # What APScheduler does once a trigger has no further fire time
    scheduler.scheduler.remove_job(task.id)

    assert not scheduler.is_armed(task.id)
    assert scheduler.armed_task_ids() == []


def test_busy_workers_do_not_delay_other_tasks(store, pipeline):
    scheduler = CronScheduler(store, pipeline, timezone="UTC", max_workers=2)
    try:
        slow = [_active(store, command="sleep 3") for _ in range(2)]
        fast = _active(store, command="echo fast")
        for task in slow + [fast]:
            scheduler.arm(task)

        for task in slow:
            scheduler.scheduler.modify_job(task.id, next_run_time=datetime.now(UTC))
        time.sleep(0.5)

        fired = datetime.now(UTC)
        scheduler.scheduler.modify_job(fast.id, next_run_time=fired)
        deadline = time.monotonic() + 2.0
        while store.get(fast.id).run_count == 0 and time.monotonic() < deadline:
            time.sleep(0.05)

        saved = store.get(fast.id)
        assert saved.run_count == 1
        assert saved.last_run - fired < timedelta(seconds=1)
        assert all(store.get(t.id).run_count == 0 for t in slow)
    finally:
        scheduler.shutdown(wait=True)
