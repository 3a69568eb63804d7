"""Tests for the APScheduler wrapper"""

import asyncio
from unittest.mock import MagicMock

from studioflow.domain.models import PassSummary
from studioflow.scheduler.automation_scheduler import PASS_JOB_ID, AutomationScheduler

from tests.factories import NOW


def fake_engine():
    engine = MagicMock()
    engine.server_id = "test-server"
    engine.run_pass.return_value = PassSummary(started_at=NOW, server_id="test-server", planned=2)
    return engine


def test_pass_runs_in_a_worker_thread_and_keeps_summary():
    scheduler = AutomationScheduler(fake_engine())

    asyncio.run(scheduler._run_pass())

    assert scheduler.last_summary.planned == 2
    scheduler.engine.run_pass.assert_called_once_with()


def test_failed_pass_does_not_raise():
    engine = fake_engine()
    engine.run_pass.side_effect = RuntimeError("store unavailable")
    scheduler = AutomationScheduler(engine)

    asyncio.run(scheduler._run_pass())

    assert scheduler.last_summary is None


def test_start_registers_single_interval_job():
    async def scenario():
        scheduler = AutomationScheduler(fake_engine())
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(PASS_JOB_ID)
            assert scheduler.is_running is True
            assert job.max_instances == 1
            assert job.coalesce is True
            assert scheduler.next_run_time() is not None
        finally:
            scheduler.stop()
        assert scheduler.is_running is False

    asyncio.run(scenario())


def test_not_started():
    scheduler = AutomationScheduler(fake_engine())

    assert scheduler.is_running is False
    assert scheduler.next_run_time() is None
