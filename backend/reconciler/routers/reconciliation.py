"""Operator controls for the reconciliation scheduler and webhook audit log."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from reconciler.core.auth import require_internal_token
from reconciler.core.database import get_db
from reconciler.core.metrics import match_outcome_counts
from reconciler.models.webhook_event_log import WebhookEventLog
from reconciler.repositories.webhook_event_log_repository import WebhookEventLogRepository
from reconciler.schemas.reconciliation import (
    DuplicateResolutionResponse,
    DuplicateResolveRequest,
    RunEnqueuedResponse,
    RunSummaryResponse,
    SchedulerStatusResponse,
)
from reconciler.schemas.webhook_event import WebhookAck, WebhookEventLogResponse
from reconciler.services.duplicate_resolver import DuplicateResolver
from reconciler.services.notification_service import ActivationNotifier
from reconciler.services.reconciliation_scheduler import (
    ReconciliationScheduler,
    RunStatus,
    RunTrigger,
    get_scheduler,
)
from reconciler.services.webhook_ingestor import WebhookIngestor
from reconciler.tasks import enqueue_reconciliation_run

router = APIRouter(dependencies=[Depends(require_internal_token)])


def _status(scheduler: ReconciliationScheduler) -> SchedulerStatusResponse:
    state = scheduler.status()
    return SchedulerStatusResponse(
        enabled=state.enabled,
        running=state.running,
        last_run_started_at=state.last_run_started_at,
        last_run_finished_at=state.last_run_finished_at,
        last_trigger=state.last_trigger,
        last_summary=state.last_summary,
        match_outcomes=match_outcome_counts(),
    )


@router.get(
    "/reconciliation/status",
    response_model=SchedulerStatusResponse,
    summary="Get reconciliation scheduler status",
)
async def get_reconciliation_status(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> SchedulerStatusResponse:
    return _status(scheduler)


@router.post(
    "/reconciliation/start",
    response_model=SchedulerStatusResponse,
    summary="Enable scheduled reconciliation",
)
async def start_reconciliation(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> SchedulerStatusResponse:
    scheduler.start()
    return _status(scheduler)


@router.post(
    "/reconciliation/stop",
    response_model=SchedulerStatusResponse,
    summary="Disable scheduled reconciliation",
)
async def stop_reconciliation(
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> SchedulerStatusResponse:
    scheduler.stop()
    return _status(scheduler)


@router.post(
    "/reconciliation/run",
    response_model=RunSummaryResponse | RunEnqueuedResponse,
    summary="Run reconciliation now",
    responses={409: {"description": "A reconciliation run is already in progress"}},
)
async def run_reconciliation(
    background: bool = Query(default=False),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> Any:
    """Run a manual pass synchronously, or enqueue it on the worker."""
    if background:
        job = await enqueue_reconciliation_run()
        return RunEnqueuedResponse(job_id=job.job_id)
    summary = await run_in_threadpool(scheduler.run, RunTrigger.MANUAL)
    if summary.status == RunStatus.ALREADY_RUNNING.value:
        raise HTTPException(status_code=409, detail="Reconciliation already running")
    return RunSummaryResponse(**summary.to_dict())


@router.post(
    "/reconciliation/duplicates/resolve",
    response_model=list[DuplicateResolutionResponse],
    summary="Cancel duplicate open subscriptions",
)
async def resolve_duplicates(
    data: DuplicateResolveRequest | None = None,
    db: Session = Depends(get_db),
) -> list[DuplicateResolutionResponse]:
    """Resolve one (user, product) pair, or every pair holding duplicates."""
    resolver = DuplicateResolver(db, notifier=ActivationNotifier())
    if data and (data.user_id or data.product_id):
        if not (data.user_id and data.product_id):
            raise HTTPException(
                status_code=400, detail="user_id and product_id must be given together"
            )
        resolutions = [
            await run_in_threadpool(resolver.resolve_pair, data.user_id, data.product_id)
        ]
    else:
        resolutions = await run_in_threadpool(resolver.resolve_all)
    return [
        DuplicateResolutionResponse(
            user_id=r.user_id,
            product_id=r.product_id,
            kept_subscription_id=r.kept_subscription_id,
            cancelled_subscription_ids=r.cancelled_subscription_ids,
        )
        for r in resolutions
    ]


@router.get(
    "/webhook-events",
    response_model=list[WebhookEventLogResponse],
    summary="List received webhook events",
)
async def list_webhook_events(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    status: str | None = Query(default=None),
    match_outcome: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[WebhookEventLog]:
    repo = WebhookEventLogRepository(db)
    return repo.get_all(
        skip=skip, limit=limit, status=status, match_outcome=match_outcome, event_type=event_type
    )


@router.post(
    "/webhook-events/{event_id}/replay",
    response_model=WebhookAck,
    summary="Replay a stored webhook event",
    responses={404: {"description": "Webhook event not found"}},
)
async def replay_webhook_event(
    event_id: str,
    db: Session = Depends(get_db),
) -> WebhookAck:
    log = WebhookEventLogRepository(db).get_by_event_id(event_id)
    if not log:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    result = await run_in_threadpool(WebhookIngestor(db).replay, log)
    return WebhookAck(**result.to_dict())
