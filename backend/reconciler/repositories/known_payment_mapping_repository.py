from uuid import UUID

from sqlalchemy.orm import Session

from reconciler.models.known_payment_mapping import KnownPaymentMapping


class KnownPaymentMappingRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_provider_payment_id(self, provider_payment_id: str) -> KnownPaymentMapping | None:
        return (
            self.db.query(KnownPaymentMapping)
            .filter(KnownPaymentMapping.provider_payment_id == provider_payment_id)
            .first()
        )

    def get_all(self, skip: int = 0, limit: int = 100) -> list[KnownPaymentMapping]:
        return (
            self.db.query(KnownPaymentMapping)
            .order_by(KnownPaymentMapping.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def create(
        self, provider_payment_id: str, subscription_id: UUID, added_by: str, reason: str
    ) -> KnownPaymentMapping:
        mapping = KnownPaymentMapping(
            provider_payment_id=provider_payment_id,
            subscription_id=subscription_id,
            added_by=added_by,
            reason=reason,
        )
        self.db.add(mapping)
        self.db.commit()
        self.db.refresh(mapping)
        return mapping
