from sqlalchemy import func
from sqlalchemy.orm import Session

from reconciler.models.user import User


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> User | None:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_provider_payer_id(self, payer_id: str) -> User | None:
        return self.db.query(User).filter(User.provider_payer_id == payer_id).first()

    def get_by_email(self, email: str) -> list[User]:
        """Users are not unique by email, so every match is returned."""
        return self.db.query(User).filter(func.lower(User.email) == email.lower()).all()

    def create(
        self, user_id: str, email: str | None = None, provider_payer_id: str | None = None
    ) -> User:
        user = User(id=user_id, email=email, provider_payer_id=provider_payer_id)
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def get_or_create(self, user_id: str, email: str | None = None) -> User:
        user = self.get_by_id(user_id)
        if user:
            if email and not user.email:
                user.email = email  # type: ignore[assignment]
                self.db.commit()
            return user
        return self.create(user_id, email=email)
