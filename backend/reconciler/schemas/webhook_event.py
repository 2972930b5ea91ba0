from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class WebhookEventLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: str
    event_type: str | None = None
    action: str | None = None
    data_id: str | None = None
    payload: dict[str, Any]
    status: str
    error_code: str | None = None
    error_detail: str | None = None
    match_outcome: str | None = None
    subscription_id: UUID | None = None
    attempts: int
    received_at: datetime | None = None
    processed_at: datetime | None = None


class WebhookAck(BaseModel):
    outcome: str
    event_id: str | None = None
    detail: str = ""
    subscription_id: str | None = None
