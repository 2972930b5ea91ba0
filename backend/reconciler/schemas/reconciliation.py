from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SchedulerStatusResponse(BaseModel):
    enabled: bool
    running: bool
    last_run_started_at: datetime | None = None
    last_run_finished_at: datetime | None = None
    last_trigger: str | None = None
    last_summary: dict[str, Any] | None = None
    match_outcomes: dict[str, dict[str, int]] = Field(default_factory=dict)


class RunSummaryResponse(BaseModel):
    trigger: str
    status: str
    skipped_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    unresolved: int = 0
    ambiguous: int = 0
    failed: int = 0
    replayed: int = 0
    errors: list[str] = Field(default_factory=list)


class RunEnqueuedResponse(BaseModel):
    job_id: str
    status: str = "queued"


class DuplicateResolveRequest(BaseModel):
    user_id: str | None = None
    product_id: str | None = None


class DuplicateResolutionResponse(BaseModel):
    user_id: str
    product_id: str
    kept_subscription_id: UUID | None = None
    cancelled_subscription_ids: list[UUID] = Field(default_factory=list)


class KnownPaymentMappingCreate(BaseModel):
    provider_payment_id: str = Field(min_length=1, max_length=64)
    subscription_id: UUID
    added_by: str = Field(min_length=1, max_length=255)
    reason: str = Field(min_length=1, max_length=500)


class KnownPaymentMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_payment_id: str
    subscription_id: UUID
    added_by: str
    reason: str
    created_at: datetime | None = None
