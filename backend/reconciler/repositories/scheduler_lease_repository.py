from datetime import datetime
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciler.models.scheduler_lease import SchedulerLease


class SchedulerLeaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, name: str) -> SchedulerLease | None:
        return self.db.query(SchedulerLease).filter(SchedulerLease.name == name).first()

    def get_or_create(self, name: str) -> SchedulerLease:
        lease = self.get(name)
        if lease:
            return lease
        try:
            lease = SchedulerLease(name=name, enabled=True)
            self.db.add(lease)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
        return self.get(name)  # type: ignore[return-value]

    def try_acquire(self, name: str, holder: str, now: datetime, expires_at: datetime) -> bool:
        """Take the lease with a conditional UPDATE; True when this holder won."""
        self.get_or_create(name)
        result = self.db.execute(
            update(SchedulerLease)
            .where(
                SchedulerLease.name == name,
                or_(SchedulerLease.holder.is_(None), SchedulerLease.expires_at < now),
            )
            .values(holder=holder, expires_at=expires_at)
        )
        self.db.commit()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    def release(self, name: str, holder: str) -> None:
        self.db.execute(
            update(SchedulerLease)
            .where(SchedulerLease.name == name, SchedulerLease.holder == holder)
            .values(holder=None, expires_at=None)
        )
        self.db.commit()

    def update_state(self, name: str, **values: Any) -> SchedulerLease:
        lease = self.get_or_create(name)
        for key, value in values.items():
            setattr(lease, key, value)
        self.db.commit()
        self.db.refresh(lease)
        return lease
