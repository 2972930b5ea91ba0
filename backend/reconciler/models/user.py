"""Local user identity used to resolve provider payers."""

from sqlalchemy import Column, DateTime, String, func

from reconciler.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    provider_payer_id = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
