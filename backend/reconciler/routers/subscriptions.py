from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from reconciler.core.database import get_db
from reconciler.models.payment_event import PaymentEvent
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.repositories.payment_event_repository import PaymentEventRepository
from reconciler.repositories.subscription_repository import SubscriptionRepository
from reconciler.repositories.user_repository import UserRepository
from reconciler.schemas.subscription import (
    PaymentEventResponse,
    SubscriptionCreate,
    SubscriptionResponse,
)
from reconciler.services.external_reference import generate_external_reference

router = APIRouter()


@router.post(
    "/",
    response_model=SubscriptionResponse,
    status_code=201,
    summary="Start a subscription checkout",
    responses={
        200: {"description": "An open subscription already exists for this user and product"},
        422: {"description": "Validation error"},
    },
)
async def create_subscription(
    data: SubscriptionCreate,
    response: Response,
    db: Session = Depends(get_db),
) -> Subscription:
    """Create a pending subscription, or return the user's open one for the product."""
    repo = SubscriptionRepository(db)
    existing = repo.get_open_for_user_product(data.user_id, data.product_id)
    if existing:
        active = [s for s in existing if s.status == SubscriptionStatus.ACTIVE.value]
        response.status_code = 200
        return (active or existing)[-1]

    UserRepository(db).get_or_create(
        data.user_id, email=str(data.customer_email) if data.customer_email else None
    )
    try:
        reference = generate_external_reference(data.user_id, data.product_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return repo.create(
        external_reference=reference,
        user_id=data.user_id,
        product_id=data.product_id,
        customer_email=str(data.customer_email) if data.customer_email else None,
        amount=data.amount,
        currency=data.currency.upper(),
        frequency=data.frequency,
        frequency_unit=data.frequency_unit.value,
    )


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionResponse,
    summary="Get subscription",
    responses={404: {"description": "Subscription not found"}},
)
async def get_subscription(
    subscription_id: UUID,
    db: Session = Depends(get_db),
) -> Subscription:
    repo = SubscriptionRepository(db)
    subscription = repo.get_by_id(subscription_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.get(
    "/{subscription_id}/payments",
    response_model=list[PaymentEventResponse],
    summary="List recorded payments for a subscription",
    responses={404: {"description": "Subscription not found"}},
)
async def list_subscription_payments(
    subscription_id: UUID,
    db: Session = Depends(get_db),
) -> list[PaymentEvent]:
    if not SubscriptionRepository(db).get_by_id(subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return PaymentEventRepository(db).get_by_subscription_id(subscription_id)
