"""Tests for worker background tasks and cron job registration."""

from unittest.mock import MagicMock, patch

import pytest

from reconciler.core.config import Settings
from reconciler.services.reconciliation_scheduler import RunStatus, RunSummary, RunTrigger
from reconciler.worker import (
    WorkerSettings,
    reconcile_subscriptions_task,
    run_reconciliation_task,
    startup,
)


def _scheduler(summary):
    scheduler = MagicMock()
    scheduler.run.return_value = summary
    return scheduler


class TestReconcileSubscriptionsTask:
    """Tests for the scheduled reconciliation cron task."""

    @pytest.mark.asyncio
    async def test_runs_scheduled_pass(self):
        """Test that the cron task runs a scheduled pass and returns its summary."""
        scheduler = _scheduler(RunSummary(trigger="scheduled", checked=3, updated=1))

        with patch("reconciler.worker.get_scheduler", return_value=scheduler):
            result = await reconcile_subscriptions_task({})

        scheduler.run.assert_called_once_with(RunTrigger.SCHEDULED)
        assert result["checked"] == 3
        assert result["updated"] == 1

    @pytest.mark.asyncio
    async def test_returns_skip_reason(self):
        """Test that a skipped pass is reported rather than raised."""
        summary = RunSummary(
            trigger="scheduled", status=RunStatus.SKIPPED.value, skipped_reason="cooldown"
        )

        with patch("reconciler.worker.get_scheduler", return_value=_scheduler(summary)):
            result = await reconcile_subscriptions_task({})

        assert result["status"] == "skipped"
        assert result["skipped_reason"] == "cooldown"

    @pytest.mark.asyncio
    async def test_against_database(self):
        """Test the task end to end against the test database."""
        result = await reconcile_subscriptions_task({})
        assert result["status"] == "completed"
        assert result["checked"] == 0


class TestRunReconciliationTask:
    @pytest.mark.asyncio
    async def test_runs_manual_pass(self):
        scheduler = _scheduler(RunSummary(trigger="manual"))

        with patch("reconciler.worker.get_scheduler", return_value=scheduler):
            result = await run_reconciliation_task({})

        scheduler.run.assert_called_once_with(RunTrigger.MANUAL)
        assert result["trigger"] == "manual"


class TestWorkerSettings:
    def test_functions_registered(self):
        assert reconcile_subscriptions_task in WorkerSettings.functions
        assert run_reconciliation_task in WorkerSettings.functions

    def test_cron_job_registered(self):
        """Test the reconciliation cron runs on the configured minutes."""
        [job] = WorkerSettings.cron_jobs
        assert job.coroutine is reconcile_subscriptions_task
        assert job.minute == {0, 10, 20, 30, 40, 50}

    @pytest.mark.asyncio
    async def test_startup_configures_logging(self):
        with patch("reconciler.worker.setup_logging") as mock_setup:
            await startup({})
        mock_setup.assert_called_once()


class TestCronMinutes:
    def test_parses_minutes(self):
        assert Settings(reconciliation_cron_minutes="5, 35").cron_minutes == {5, 35}
