import logging
from typing import Any

from arq import cron

from reconciler.core.config import settings
from reconciler.core.logging import setup_logging
from reconciler.services.reconciliation_scheduler import RunTrigger, get_scheduler
from reconciler.tasks import redis_settings

logger = logging.getLogger(__name__)


async def reconcile_subscriptions_task(ctx: dict[str, Any]) -> dict[str, Any]:
    """Background task: scheduled reconciliation pass.

    Skips itself when the scheduler is disabled, inside its cooldown, or
    when another instance holds the lease.
    """
    summary = get_scheduler().run(RunTrigger.SCHEDULED)
    if summary.status == "completed" and summary.checked:
        logger.info("Reconciled %d pending subscriptions", summary.checked)
    return summary.to_dict()


async def run_reconciliation_task(ctx: dict[str, Any]) -> dict[str, Any]:
    """Background task: operator-requested reconciliation pass."""
    return get_scheduler().run(RunTrigger.MANUAL).to_dict()


async def startup(ctx: dict[str, Any]) -> None:
    setup_logging()
    logger.info("Reconciliation worker started")


class WorkerSettings:
    functions = [
        reconcile_subscriptions_task,
        run_reconciliation_task,
    ]
    cron_jobs = [
        cron(reconcile_subscriptions_task, minute=settings.cron_minutes),
    ]
    on_startup = startup
    redis_settings = redis_settings
