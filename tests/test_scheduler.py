"""
Tests for next-run computation and the schedule poller.
"""

from datetime import datetime

import pytest
from unittest.mock import AsyncMock, Mock

from datasync.core.enums import JobAction
from datasync.core.models import Schedule
from datasync.scheduler.etl_scheduler import EtlScheduler, compute_next_run

NOW = datetime(2024, 1, 15, 10, 17, 42)


class TestComputeNextRun:

    @pytest.mark.parametrize("expression,expected", [
        ("* * * * *", datetime(2024, 1, 15, 10, 18)),
        ("*/15 * * * *", datetime(2024, 1, 15, 10, 32)),
        ("0 * * * *", datetime(2024, 1, 15, 11, 0)),
        ("0 */6 * * *", datetime(2024, 1, 15, 16, 0)),
        ("0 14 * * *", datetime(2024, 1, 15, 14, 0)),
        ("0 3 * * *", datetime(2024, 1, 16, 3, 0)),
        ("0 10 * * *", datetime(2024, 1, 16, 10, 0)),
    ])
    def test_supported_patterns(self, expression, expected):
        assert compute_next_run(expression, NOW) == expected

    @pytest.mark.parametrize("expression", ["30 2 * * 1", "0 25 * * *", "nonsense", "", "*/0 * * * *"])
    def test_other_expressions_wait_a_day(self, expression):
        assert compute_next_run(expression, NOW) == datetime(2024, 1, 16, 10, 17, 42)


class TestEtlScheduler:

    @pytest.mark.asyncio
    async def test_due_schedules_run_incremental_syncs(self, store):
        store.schedules = [
            Schedule(id="s-1", dataset_id="ds-1", cron_expression="0 * * * *", dataset_name="Orders"),
            Schedule(id="s-2", dataset_id="ds-2", cron_expression="*/5 * * * *"),
        ]
        job_manager = Mock()
        job_manager.run_sync_job = AsyncMock(return_value={"status": "completed"})

        results = await EtlScheduler(store, job_manager).check_scheduled_jobs()

        assert len(results) == 2
        request = job_manager.run_sync_job.await_args_list[0].args[0]
        assert request.dataset_id == "ds-1"
        assert request.action == JobAction.INCREMENTAL_SYNC
        assert request.triggered_by == "scheduler"
        assert [run[0] for run in store.schedule_runs] == ["s-1", "s-2"]

    @pytest.mark.asyncio
    async def test_failed_schedule_is_not_advanced(self, store):
        store.schedules = [
            Schedule(id="s-1", dataset_id="ds-1", cron_expression="0 * * * *"),
            Schedule(id="s-2", dataset_id="ds-2", cron_expression="0 * * * *"),
        ]
        job_manager = Mock()
        job_manager.run_sync_job = AsyncMock(side_effect=[RuntimeError("source down"), {"status": "skipped"}])

        results = await EtlScheduler(store, job_manager).check_scheduled_jobs()

        assert results[0] == {"dataset_id": "ds-1", "status": "failed", "error": "source down"}
        assert [run[0] for run in store.schedule_runs] == ["s-2"]
