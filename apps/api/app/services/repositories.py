from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api.app.core.errors import RecordNotFound, StorageError
from apps.api.app.models.recovery_token import RecoveryToken
from apps.api.app.models.user import User


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_email(self, email: str):
        return (
            self.db.execute(select(User).where(User.email == email))
            .scalar_one_or_none()
        )

    def update(self, user_id: str, fields: dict[str, Any]) -> None:
        """Apply a partial update in place; the caller keeps its own copy of the user."""
        try:
            result = self.db.execute(
                update(User).where(User.id == user_id).values(**fields)
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not update user {user_id}") from exc
        if result.rowcount == 0:
            raise RecordNotFound(f"User {user_id} does not exist")


class RecoveryTokenRepository:
    def __init__(self, db: Session):
        self.db = db

    def insert(self, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        try:
            self.db.execute(insert(RecoveryToken), records)
        except SQLAlchemyError as exc:
            raise StorageError("Could not store recovery tokens") from exc

    def for_user(self, user_id: str) -> list[RecoveryToken]:
        try:
            return list(
                self.db.execute(
                    select(RecoveryToken).where(RecoveryToken.user_id == user_id)
                ).scalars()
            )
        except SQLAlchemyError as exc:
            raise StorageError("Could not load recovery tokens") from exc

    def delete(self, token_id: str) -> int:
        """Returns the number of rows removed, 0 if another request got there first."""
        try:
            result = self.db.execute(delete(RecoveryToken).where(RecoveryToken.id == token_id))
        except SQLAlchemyError as exc:
            raise StorageError("Could not delete recovery token") from exc
        return result.rowcount

    def delete_for_user(self, user_id: str) -> None:
        try:
            self.db.execute(delete(RecoveryToken).where(RecoveryToken.user_id == user_id))
        except SQLAlchemyError as exc:
            raise StorageError("Could not delete recovery tokens") from exc
