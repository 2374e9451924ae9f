"""
Tests for the background job scheduler.
"""
import asyncio

import pytest

from correlation_core.orchestrator.scheduler import BackgroundScheduler


def test_add_job_rejects_non_positive_interval():
    scheduler = BackgroundScheduler()

    async def job():
        return None

    with pytest.raises(ValueError):
        scheduler.add_job("broken", 0, job)


@pytest.mark.asyncio
async def test_run_job_counts_success_and_failure():
    scheduler = BackgroundScheduler()
    calls = []

    async def ok():
        calls.append("ok")

    async def failing():
        raise RuntimeError("sweep failed")

    ok_job = scheduler.add_job("ok", 60, ok)
    failing_job = scheduler.add_job("failing", 60, failing)

    await scheduler.run_job(ok_job)
    await scheduler.run_job(failing_job)

    assert calls == ["ok"]
    assert (ok_job.runs, ok_job.failures) == (1, 0)
    assert (failing_job.runs, failing_job.failures) == (0, 1)


@pytest.mark.asyncio
async def test_jobs_repeat_until_stopped():
    scheduler = BackgroundScheduler()
    ran = asyncio.Event()
    calls = []

    async def job():
        calls.append(1)
        if len(calls) >= 3:
            ran.set()

    scheduler.add_job("tick", 0.01, job, run_immediately=True)
    scheduler.start()
    await asyncio.wait_for(ran.wait(), timeout=5)
    await scheduler.stop()

    runs = scheduler.get_job("tick").runs
    assert runs >= 3
    await asyncio.sleep(0.05)
    assert scheduler.get_job("tick").runs == runs
    assert scheduler.is_running is False


@pytest.mark.asyncio
async def test_stop_cancels_running_job():
    scheduler = BackgroundScheduler()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(30)

    scheduler.add_job("slow", 60, slow, run_immediately=True)
    scheduler.start()
    await asyncio.wait_for(started.wait(), timeout=5)

    await asyncio.wait_for(scheduler.stop(), timeout=5)

    assert scheduler.get_job("slow").runs == 0
    assert scheduler.get_job("slow").failures == 0
