"""Inbound payment provider webhook endpoint."""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from reconciler.core.database import get_db
from reconciler.schemas.webhook_event import WebhookAck
from reconciler.services.webhook_ingestor import WebhookIngestor

router = APIRouter()


def get_webhook_ingestor(db: Session = Depends(get_db)) -> WebhookIngestor:
    return WebhookIngestor(db)


@router.post(
    "/payment-provider",
    response_model=WebhookAck,
    summary="Receive payment provider notification",
    responses={
        400: {"description": "Body is not valid JSON"},
        401: {"description": "Invalid signature"},
    },
)
async def receive_payment_provider_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookAck:
    """Acknowledge a provider notification once it is durably logged.

    Matching or provider failures never turn into a non-2xx response; they
    are recorded on the event log and replayed by reconciliation.
    """
    body = await request.body()
    result = await run_in_threadpool(ingestor.ingest, body, request.headers, request.query_params)
    if result.status_code == 400:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if result.status_code == 401:
        raise HTTPException(status_code=401, detail="Invalid signature")
    return WebhookAck(**result.to_dict())
