# tests/test_task_scheduler.py

from __future__ import annotations

import asyncio
import time

import pytest

from task_orchestrator.core.events import EventKind
from task_orchestrator.errors import ScheduleError, TaskExecutionError, TaskTimeoutError
from task_orchestrator.tasks.task_models import OverflowPolicy, Task, TaskStatus

from .fakes import CallLog, wait_until


@pytest.mark.asyncio
async def test_interval_task_fires_repeatedly(make_scheduler) -> None:
    scheduler, recorder = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="tick", fn=log, interval=0.02))

    await wait_until(lambda: log.count("tick") >= 3)

    task = scheduler.get_task("tick")
    assert task is not None
    assert task.execution_count >= 3
    assert task.last_result == "tick-ok"
    assert task.last_execution_time is not None
    assert recorder.of(EventKind.TASK_COMPLETED, "tick")


@pytest.mark.asyncio
async def test_tasks_are_not_armed_before_start(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.add_task(Task(id="tick", fn=log, interval=0.01, run_on_start=True))

    await asyncio.sleep(0.05)
    assert log.count() == 0
    assert scheduler.status()["armed"] == []

    scheduler.start()
    assert scheduler.status()["armed"] == ["tick"]
    await wait_until(lambda: log.count() >= 1)


@pytest.mark.asyncio
async def test_run_on_start_fires_once_without_schedule(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.add_task(Task(id="boot", fn=log, run_on_start=True))
    scheduler.start()

    await wait_until(lambda: log.count("boot") == 1)
    await asyncio.sleep(0.05)

    assert log.count("boot") == 1
    assert scheduler.get_task("boot").status is TaskStatus.COMPLETED
    assert scheduler.get_task("boot").next_execution_time is None


@pytest.mark.asyncio
async def test_concurrency_bound_is_never_exceeded(make_scheduler) -> None:
    scheduler, _ = make_scheduler(max_concurrent=2)
    log = CallLog(delay=0.05)
    scheduler.start()
    for i in range(5):
        scheduler.add_task(Task(id=f"t{i}", fn=log, interval=0.02))

    await asyncio.sleep(0.4)

    assert log.count() > 2
    assert log.max_active <= 2


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", [OverflowPolicy.QUEUE, OverflowPolicy.DROP])
async def test_two_tasks_with_bound_one_never_overlap(make_scheduler, policy) -> None:
    scheduler, _ = make_scheduler(max_concurrent=1, overflow_policy=policy)
    log = CallLog(delay=0.03)
    scheduler.start()
    scheduler.add_task(Task(id="a", fn=log, interval=0.05))
    scheduler.add_task(Task(id="b", fn=log, interval=0.05))

    deadline = time.monotonic() + 0.5
    while time.monotonic() < deadline:
        running = [t for t in scheduler.get_tasks() if t.status is TaskStatus.RUNNING]
        assert len(running) <= 1
        await asyncio.sleep(0.005)

    assert log.count() >= 2
    assert log.max_active == 1


@pytest.mark.asyncio
async def test_false_condition_never_invokes_body(make_scheduler) -> None:
    scheduler, recorder = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="guarded", fn=log, interval=0.02, condition=lambda ctx: False))

    await asyncio.sleep(0.15)

    task = scheduler.get_task("guarded")
    assert log.count() == 0
    assert task.execution_count == 0
    assert task.status is TaskStatus.IDLE
    skipped = recorder.of(EventKind.TASK_SKIPPED, "guarded")
    assert skipped
    assert skipped[0].get("reason") == "condition not met"
    assert task.next_execution_time is not None


@pytest.mark.asyncio
async def test_condition_reads_shared_context(make_scheduler) -> None:
    shared = {"go": False}
    scheduler, _ = make_scheduler(context=shared)
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="gate", fn=log, interval=0.02, condition=lambda ctx: ctx.shared["go"]))

    await asyncio.sleep(0.06)
    assert log.count() == 0

    shared["go"] = True
    await wait_until(lambda: log.count() >= 1)


@pytest.mark.asyncio
async def test_condition_cannot_mutate_context_and_failure_is_a_skip(make_scheduler) -> None:
    shared = {"balance": 10}
    scheduler, recorder = make_scheduler(context=shared)
    log = CallLog()

    def sneaky(ctx) -> bool:
        ctx.shared["balance"] = 0
        return True

    scheduler.start()
    scheduler.add_task(Task(id="sneaky", fn=log, condition=sneaky))
    result = await scheduler.run_now("sneaky")

    assert result is None
    assert shared == {"balance": 10}
    assert log.count() == 0
    skipped = recorder.of(EventKind.TASK_SKIPPED, "sneaky")
    assert len(skipped) == 1
    assert skipped[0].get("reason").startswith("condition failed")


@pytest.mark.asyncio
async def test_async_condition_is_awaited(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()

    async def ready(ctx) -> bool:
        await asyncio.sleep(0)
        return True

    scheduler.start()
    scheduler.add_task(Task(id="async-cond", fn=log, condition=ready))
    task = await scheduler.run_now("async-cond")

    assert task is not None
    assert log.count() == 1


@pytest.mark.asyncio
async def test_timeout_produces_exactly_one_error(make_scheduler) -> None:
    scheduler, recorder = make_scheduler()

    async def slow(ctx) -> None:
        await asyncio.sleep(1)

    scheduler.start()
    scheduler.add_task(Task(id="slow", fn=slow, timeout=0.05))

    started = time.monotonic()
    task = await scheduler.run_now("slow")
    elapsed = time.monotonic() - started

    assert task is not None
    assert elapsed < 0.5
    assert task.status is TaskStatus.ERROR
    assert isinstance(task.last_error, TaskTimeoutError)
    assert task.last_error.timeout == pytest.approx(0.05)

    await asyncio.sleep(0.05)
    errors = recorder.of(EventKind.TASK_ERROR, "slow")
    assert len(errors) == 1
    assert isinstance(errors[0].get("error"), TaskTimeoutError)
    assert not recorder.of(EventKind.TASK_COMPLETED, "slow")


@pytest.mark.asyncio
async def test_blocking_sync_body_is_abandoned_on_timeout(make_scheduler) -> None:
    scheduler, _ = make_scheduler()

    def blocking(ctx) -> str:
        time.sleep(0.2)
        return "late"

    scheduler.start()
    scheduler.add_task(Task(id="blocking", fn=blocking, timeout=0.05))
    task = await scheduler.run_now("blocking")

    assert isinstance(task.last_error, TaskTimeoutError)
    assert task.last_result is None


@pytest.mark.asyncio
async def test_body_exception_is_wrapped(make_scheduler) -> None:
    scheduler, recorder = make_scheduler()

    def broken(ctx) -> None:
        raise ValueError("bad input")

    scheduler.start()
    scheduler.add_task(Task(id="broken", fn=broken))
    task = await scheduler.run_now("broken")

    err = task.last_error
    assert isinstance(err, TaskExecutionError)
    assert isinstance(err.cause, ValueError)
    assert err.error_type == "ValueError"
    assert err.message == "bad input"
    assert task.status is TaskStatus.ERROR
    assert len(recorder.of(EventKind.TASK_ERROR, "broken")) == 1


@pytest.mark.asyncio
async def test_sync_body_does_not_block_other_timers(make_scheduler) -> None:
    scheduler, _ = make_scheduler(max_concurrent=2)
    ticks = CallLog()

    def blocking(ctx) -> None:
        time.sleep(0.25)

    scheduler.start()
    scheduler.add_task(Task(id="blocking", fn=blocking))
    scheduler.add_task(Task(id="ticker", fn=ticks, interval=0.02))

    runner = asyncio.create_task(scheduler.run_now("blocking"))
    await wait_until(lambda: scheduler.is_running("blocking"))
    before = ticks.count()
    await asyncio.sleep(0.12)
    assert scheduler.is_running("blocking")
    assert ticks.count() >= before + 2

    await runner


@pytest.mark.asyncio
async def test_retries_until_limit_then_error(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog(fail=True)
    scheduler.start()
    scheduler.add_task(Task(id="flaky", fn=log, interval=0.1, max_retries=2, retry_delay=0.05))

    await asyncio.sleep(0.35)

    task = scheduler.get_task("flaky")
    assert task.execution_count >= 3
    assert task.status is TaskStatus.ERROR


@pytest.mark.asyncio
async def test_retry_count_is_bounded_for_manual_task(make_scheduler) -> None:
    scheduler, recorder = make_scheduler()
    log = CallLog(fail=True)
    scheduler.start()
    scheduler.add_task(Task(id="once", fn=log, max_retries=3, retry_delay=0.01))

    await scheduler.run_now("once")
    await wait_until(lambda: log.count("once") == 3)
    await asyncio.sleep(0.1)

    assert log.count("once") == 3
    assert len(recorder.of(EventKind.TASK_ERROR, "once")) == 3
    started = recorder.of(EventKind.TASK_STARTED, "once")
    assert [e.get("retry") for e in started] == [False, True, True]
    assert [e.get("attempt") for e in started] == [1, 2, 3]


@pytest.mark.asyncio
async def test_retry_stops_after_success(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    calls = {"n": 0}

    async def second_time_lucky(ctx) -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("first try")
        return "ok"

    scheduler.start()
    scheduler.add_task(Task(id="lucky", fn=second_time_lucky, max_retries=5, retry_delay=0.01))
    await scheduler.run_now("lucky")
    await wait_until(lambda: scheduler.get_task("lucky").status is TaskStatus.COMPLETED)
    await asyncio.sleep(0.05)

    task = scheduler.get_task("lucky")
    assert calls["n"] == 2
    assert task.last_result == "ok"


@pytest.mark.asyncio
async def test_remove_cancels_timer(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="gone", fn=log, interval=0.03))

    await wait_until(lambda: log.count() >= 1)
    removed = scheduler.remove_task("gone")
    seen = log.count()
    await asyncio.sleep(0.15)

    assert removed is not None
    assert log.count() == seen
    assert scheduler.get_task("gone") is None
    assert scheduler.status()["armed"] == []
    assert scheduler.remove_task("gone") is None


@pytest.mark.asyncio
async def test_pause_and_resume_task(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="p", fn=log, interval=0.1))

    await wait_until(lambda: log.count() >= 1)
    task = scheduler.pause_task("p")
    paused_at = log.count()
    assert task.status is TaskStatus.PAUSED
    assert task.next_execution_time is None

    await asyncio.sleep(0.25)
    assert log.count() == paused_at
    assert scheduler.resume_task("p") is True

    await asyncio.sleep(0.15)
    assert log.count() == paused_at + 1


@pytest.mark.asyncio
async def test_resume_of_non_paused_task_is_noop(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    scheduler.start()
    scheduler.add_task(Task(id="idle", fn=CallLog()))

    assert scheduler.resume_task("idle") is False
    with pytest.raises(KeyError):
        scheduler.pause_task("missing")


@pytest.mark.asyncio
async def test_pause_during_execution_keeps_pause_and_records_result(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    gate = asyncio.Event()

    async def waits(ctx) -> str:
        await gate.wait()
        return "done"

    scheduler.start()
    scheduler.add_task(Task(id="inflight", fn=waits))
    runner = asyncio.create_task(scheduler.run_now("inflight"))
    await wait_until(lambda: scheduler.is_running("inflight"))

    scheduler.pause_task("inflight")
    gate.set()
    task = await runner

    assert task.status is TaskStatus.PAUSED
    assert task.last_result == "done"
    assert task.execution_count == 1


@pytest.mark.asyncio
async def test_no_retry_when_paused_during_failing_execution(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    gate = asyncio.Event()
    calls = {"n": 0}

    async def fails_later(ctx) -> None:
        calls["n"] += 1
        await gate.wait()
        raise RuntimeError("boom")

    scheduler.start()
    scheduler.add_task(Task(id="f", fn=fails_later, max_retries=3, retry_delay=0.01))
    runner = asyncio.create_task(scheduler.run_now("f"))
    await wait_until(lambda: scheduler.is_running("f"))

    scheduler.pause_task("f")
    gate.set()
    task = await runner
    await asyncio.sleep(0.05)

    assert calls["n"] == 1
    assert task.status is TaskStatus.PAUSED
    assert isinstance(task.last_error, TaskExecutionError)


@pytest.mark.asyncio
async def test_single_flight_drops_overlapping_fire(make_scheduler) -> None:
    scheduler, recorder = make_scheduler(max_concurrent=3)
    gate = asyncio.Event()

    async def waits(ctx) -> None:
        await gate.wait()

    scheduler.start()
    scheduler.add_task(Task(id="solo", fn=waits))
    runner = asyncio.create_task(scheduler.run_now("solo"))
    await wait_until(lambda: scheduler.is_running("solo"))

    assert await scheduler.run_now("solo") is None
    dropped = recorder.of(EventKind.TASK_DROPPED, "solo")
    assert [e.get("reason") for e in dropped] == ["already running"]

    gate.set()
    assert await runner is not None


@pytest.mark.asyncio
async def test_drop_policy_discards_fire_at_capacity(make_scheduler) -> None:
    scheduler, recorder = make_scheduler(max_concurrent=1, overflow_policy=OverflowPolicy.DROP)
    gate = asyncio.Event()
    log = CallLog()

    async def blocker(ctx) -> None:
        await gate.wait()

    scheduler.start()
    scheduler.add_task(Task(id="blocker", fn=blocker))
    scheduler.add_task(Task(id="late", fn=log))
    runner = asyncio.create_task(scheduler.run_now("blocker"))
    await wait_until(lambda: scheduler.is_running("blocker"))

    assert await scheduler.run_now("late") is None
    assert log.count() == 0
    dropped = recorder.of(EventKind.TASK_DROPPED, "late")
    assert [e.get("reason") for e in dropped] == ["concurrency limit reached"]
    assert not recorder.of(EventKind.TASK_QUEUED)

    gate.set()
    await runner


@pytest.mark.asyncio
async def test_queue_policy_defers_fire_at_capacity(make_scheduler) -> None:
    scheduler, recorder = make_scheduler(max_concurrent=1, overflow_policy=OverflowPolicy.QUEUE)
    gate = asyncio.Event()
    log = CallLog()

    async def blocker(ctx) -> None:
        await gate.wait()

    scheduler.start()
    scheduler.add_task(Task(id="blocker", fn=blocker))
    scheduler.add_task(Task(id="late", fn=log))
    blocked = asyncio.create_task(scheduler.run_now("blocker"))
    await wait_until(lambda: scheduler.is_running("blocker"))

    deferred = asyncio.create_task(scheduler.run_now("late"))
    await wait_until(lambda: scheduler.status()["queued"] == 1)
    assert recorder.of(EventKind.TASK_QUEUED, "late")
    assert log.count() == 0

    gate.set()
    await blocked
    task = await deferred
    assert task is not None
    assert log.count("late") == 1


@pytest.mark.asyncio
async def test_full_queue_drops(make_scheduler) -> None:
    scheduler, recorder = make_scheduler(max_concurrent=1, queue_maxsize=1)
    gate = asyncio.Event()
    log = CallLog()

    async def blocker(ctx) -> None:
        await gate.wait()

    scheduler.start()
    scheduler.add_task(Task(id="blocker", fn=blocker))
    scheduler.add_task(Task(id="second", fn=log))
    scheduler.add_task(Task(id="third", fn=log))
    blocked = asyncio.create_task(scheduler.run_now("blocker"))
    await wait_until(lambda: scheduler.is_running("blocker"))

    second = asyncio.create_task(scheduler.run_now("second"))
    await wait_until(lambda: scheduler.status()["queued"] == 1)
    assert await scheduler.run_now("third") is None
    assert recorder.of(EventKind.TASK_DROPPED, "third")

    gate.set()
    await blocked
    await second
    assert log.count("second") == 1
    assert log.count("third") == 0


@pytest.mark.asyncio
async def test_priority_breaks_ties_in_queue(make_scheduler) -> None:
    scheduler, _ = make_scheduler(max_concurrent=1)
    gate = asyncio.Event()
    order: list[str] = []

    async def blocker(ctx) -> None:
        order.append(ctx.task_id)
        await gate.wait()

    async def record(ctx) -> None:
        order.append(ctx.task_id)

    scheduler.start()
    scheduler.add_task(Task(id="blocker", fn=blocker))
    scheduler.add_task(Task(id="low", fn=record, priority=1))
    scheduler.add_task(Task(id="high", fn=record, priority=10))

    blocked = asyncio.create_task(scheduler.run_now("blocker"))
    await wait_until(lambda: scheduler.is_running("blocker"))
    low = asyncio.create_task(scheduler.run_now("low"))
    high = asyncio.create_task(scheduler.run_now("high"))
    await wait_until(lambda: scheduler.status()["queued"] == 2)

    gate.set()
    await asyncio.gather(blocked, low, high)
    assert order == ["blocker", "high", "low"]


@pytest.mark.asyncio
async def test_disabled_task_never_runs(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="off", fn=log, interval=0.01, run_on_start=True, enabled=False))

    await asyncio.sleep(0.05)
    assert await scheduler.run_now("off") is None
    assert log.count() == 0
    assert scheduler.status()["armed"] == []


@pytest.mark.asyncio
async def test_cron_task_fires_on_next_matching_second(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="every-second", fn=log, cron="* * * * * *"))

    task = scheduler.get_task("every-second")
    assert task.next_execution_time is not None
    await wait_until(lambda: log.count() >= 1, timeout=2.5)


@pytest.mark.asyncio
async def test_invalid_definition_is_rejected(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    scheduler.start()

    with pytest.raises(ScheduleError):
        scheduler.add_task(Task(id="bad", fn=CallLog(), interval=0))
    with pytest.raises(ScheduleError):
        scheduler.add_task(Task(id="bad", fn=CallLog(), cron="not a cron"))
    with pytest.raises(ScheduleError):
        scheduler.add_task(Task(id="bad", fn=CallLog(), interval=1, cron="* * * * *"))

    assert scheduler.get_task("bad") is None


@pytest.mark.asyncio
async def test_redefinition_resets_runtime_record(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    log = CallLog()
    scheduler.start()
    scheduler.add_task(Task(id="same", fn=log))
    await scheduler.run_now("same")
    assert scheduler.get_task("same").execution_count == 1

    replacement = scheduler.add_task(Task(id="same", fn=log, interval=10))
    assert scheduler.get_task("same") is replacement
    assert replacement.execution_count == 0
    assert replacement.last_result is None
    assert scheduler.status()["armed"] == ["same"]


@pytest.mark.asyncio
async def test_run_now_requires_known_task_and_active_scheduler(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    scheduler.add_task(Task(id="x", fn=CallLog()))

    with pytest.raises(RuntimeError):
        await scheduler.run_now("x")
    scheduler.start()
    with pytest.raises(KeyError):
        await scheduler.run_now("missing")


@pytest.mark.asyncio
async def test_context_is_shared_by_reference(make_scheduler) -> None:
    shared = {"hits": 0}
    scheduler, _ = make_scheduler(context=shared)

    async def bump(ctx) -> None:
        async with ctx.lock():
            ctx.shared["hits"] += 1

    scheduler.start()
    scheduler.add_task(Task(id="bump", fn=bump))
    await scheduler.run_now("bump")
    await scheduler.run_now("bump")

    assert shared["hits"] == 2


@pytest.mark.asyncio
async def test_sync_body_lock_excludes_async_holders(make_scheduler) -> None:
    scheduler, _ = make_scheduler(max_concurrent=2)
    order: list[str] = []

    def sync_writer(ctx) -> None:
        with ctx.lock("ledger"):
            order.append("sync-in")
            time.sleep(0.1)
            order.append("sync-out")

    async def async_writer(ctx) -> None:
        async with ctx.lock("ledger"):
            order.append("async")

    scheduler.start()
    scheduler.add_task(Task(id="sync", fn=sync_writer))
    scheduler.add_task(Task(id="async", fn=async_writer))

    runner = asyncio.create_task(scheduler.run_now("sync"))
    await wait_until(lambda: "sync-in" in order)
    waited = await scheduler.run_now("async")
    task = await runner

    assert order == ["sync-in", "sync-out", "async"]
    assert task.status is TaskStatus.COMPLETED
    assert waited.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_execution(make_scheduler) -> None:
    scheduler, _ = make_scheduler()
    cancelled = asyncio.Event()

    async def forever(ctx) -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    scheduler.start()
    scheduler.add_task(Task(id="forever", fn=forever, interval=10, run_on_start=True))
    await wait_until(lambda: scheduler.is_running("forever"))

    await scheduler.shutdown()
    await wait_until(cancelled.is_set, timeout=1.0)
    assert not scheduler.active
    assert scheduler.status() == {"running": [], "queued": 0, "armed": []}
