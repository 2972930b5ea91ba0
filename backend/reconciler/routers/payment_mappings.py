"""Operator-maintained payment to subscription memo table."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciler.core.auth import require_internal_token
from reconciler.core.database import get_db
from reconciler.models.known_payment_mapping import KnownPaymentMapping
from reconciler.repositories.known_payment_mapping_repository import KnownPaymentMappingRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.schemas.reconciliation import KnownPaymentMappingCreate, KnownPaymentMappingResponse

router = APIRouter(dependencies=[Depends(require_internal_token)])


@router.get(
    "/",
    response_model=list[KnownPaymentMappingResponse],
    summary="List known payment mappings",
)
async def list_payment_mappings(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[KnownPaymentMapping]:
    return KnownPaymentMappingRepository(db).get_all(skip=skip, limit=limit)


@router.post(
    "/",
    response_model=KnownPaymentMappingResponse,
    status_code=201,
    summary="Map a provider payment to a subscription",
    responses={
        404: {"description": "Subscription not found"},
        409: {"description": "Payment already mapped"},
    },
)
async def create_payment_mapping(
    data: KnownPaymentMappingCreate,
    db: Session = Depends(get_db),
) -> KnownPaymentMapping:
    if not SubscriptionRepository(db).get_by_id(data.subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found")
    repo = KnownPaymentMappingRepository(db)
    try:
        return repo.create(
            provider_payment_id=data.provider_payment_id,
            subscription_id=data.subscription_id,
            added_by=data.added_by,
            reason=data.reason,
        )
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Payment already mapped") from None
