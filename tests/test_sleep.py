from datetime import datetime, timedelta, timezone

import pytest

from durastep.calls import CallScheduler
from durastep.execute import Completed, Failed, ReplayExecutor, Suspended
from durastep.ledger import StepLedger
from durastep.persistence import TimerEntry, WorkflowRun
from durastep.timers import DurableTimer

RUN_ID = "wfr_sleep"


async def invoke(workflow, repository, clock):
    executor = ReplayExecutor(
        workflow,
        repository,
        CallScheduler(repository, clock=clock),
        DurableTimer(repository, clock=clock),
        clock=clock,
    )
    await repository.create_run(WorkflowRun(run_id=RUN_ID, url="https://app.test/wf"))
    run = await repository.get_run(RUN_ID)
    ledger = await StepLedger.load(repository, RUN_ID)
    return await executor.execute(run, ledger)


async def nap(context):
    await context.sleep("sleep 1", 2)
    return "awake"


@pytest.mark.asyncio
async def test_sleep_suspends_then_resumes_after_wake_time(repository, clock):
    outcome = await invoke(nap, repository, clock)
    assert isinstance(outcome, Suspended)
    assert outcome.delay == 2
    assert outcome.reason == "sleep 'sleep 1'"

    clock.advance(2)
    outcome = await invoke(nap, repository, clock)
    assert isinstance(outcome, Completed)
    assert outcome.result == "awake"

    step = (await repository.get_steps(RUN_ID))[0]
    timer = await repository.get_timer(RUN_ID, 0)
    assert timer.fired_at is not None
    assert (timer.fired_at - step.completed_at).total_seconds() >= 2


@pytest.mark.asyncio
async def test_early_redelivery_suspends_for_remaining_time(repository, clock):
    await invoke(nap, repository, clock)

    clock.advance(0.5)
    outcome = await invoke(nap, repository, clock)

    assert isinstance(outcome, Suspended)
    assert outcome.delay == pytest.approx(1.5)
    timer = await repository.get_timer(RUN_ID, 0)
    assert timer.fired_at is None


@pytest.mark.asyncio
async def test_zero_sleep_does_not_suspend(repository, clock):
    async def workflow(context):
        await context.sleep("instant", 0)
        return "done"

    outcome = await invoke(workflow, repository, clock)
    assert isinstance(outcome, Completed)


@pytest.mark.asyncio
async def test_sleep_until_aware_datetime(repository, clock):
    wake = clock() + timedelta(hours=1)

    async def workflow(context):
        await context.sleep_until("until", wake)
        return "later"

    outcome = await invoke(workflow, repository, clock)
    assert isinstance(outcome, Suspended)
    assert outcome.delay == 3600

    clock.advance(3600)
    outcome = await invoke(workflow, repository, clock)
    assert outcome.result == "later"


@pytest.mark.asyncio
async def test_sleep_until_rejects_naive_datetime(repository, clock):
    async def workflow(context):
        await context.sleep_until("naive", datetime(2030, 1, 1))

    outcome = await invoke(workflow, repository, clock)
    assert isinstance(outcome, Failed)
    assert "timezone-aware" in outcome.message


@pytest.mark.asyncio
async def test_timer_fires_once(repository, clock):
    wake = clock()
    await repository.put_timer(TimerEntry(run_id=RUN_ID, step_index=0, wake_at=wake))

    first = clock() + timedelta(seconds=1)
    await repository.mark_timer_fired(RUN_ID, 0, first)
    await repository.mark_timer_fired(RUN_ID, 0, first + timedelta(seconds=5))

    timer = await repository.get_timer(RUN_ID, 0)
    assert timer.fired_at == first


@pytest.mark.asyncio
async def test_due_lists_only_unfired_past_timers(repository, clock):
    timer = DurableTimer(repository, clock=clock)
    now = clock()
    await repository.put_timer(TimerEntry(run_id="a", step_index=0, wake_at=now - timedelta(seconds=1)))
    await repository.put_timer(TimerEntry(run_id="b", step_index=0, wake_at=now + timedelta(seconds=60)))
    await repository.put_timer(TimerEntry(run_id="c", step_index=0, wake_at=now - timedelta(seconds=5)))
    await repository.mark_timer_fired("c", 0, now)

    due = await timer.due()
    assert [t.run_id for t in due] == ["a"]

    later = await timer.due(datetime(2100, 1, 1, tzinfo=timezone.utc))
    assert sorted(t.run_id for t in later) == ["a", "b"]
