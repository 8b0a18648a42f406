import random
import string
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.core.errors import StorageError
from apps.api.app.core.logging import get_logger
from apps.api.app.core.security import pwd_context
from apps.api.app.models.user import User
from apps.api.app.services.repositories import RecoveryTokenRepository

logger = get_logger(__name__)

ALPHABET = string.ascii_letters + string.digits


class CodeGenerator:
    """
    Produces plaintext recovery codes and their stored hashes.

    `rng` only needs a `choice` method; pass a seeded `random.Random` for
    reproducible codes in tests.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        count: Optional[int] = None,
        length: Optional[int] = None,
        hash_context: Optional[CryptContext] = None,
    ):
        self.rng = rng or random.SystemRandom()
        self.count = settings.RECOVERY_CODE_COUNT if count is None else count
        self.length = settings.RECOVERY_CODE_LENGTH if length is None else length
        self.hash_context = hash_context or pwd_context

    def _code(self) -> str:
        return "".join(self.rng.choice(ALPHABET) for _ in range(self.length))

    def generate(self) -> list[str]:
        codes: list[str] = []
        while len(codes) < self.count:
            code = self._code()
            if code not in codes:
                codes.append(code)
        return codes

    def hash(self, code: str) -> str:
        return self.hash_context.hash(code)

    def verify(self, code: str, hashed: str) -> bool:
        return self.hash_context.verify(code, hashed)


def consume_recovery_code(
    db: Session,
    user: User,
    code: str,
    generator: Optional[CodeGenerator] = None,
) -> bool:
    """Spend one of the user's recovery codes. Returns False if none matched."""
    generator = generator or CodeGenerator()
    repository = RecoveryTokenRepository(db)

    for row in repository.for_user(user.id):
        if generator.verify(code, row.token):
            try:
                spent = repository.delete(row.id) == 1
                if spent:
                    db.commit()
                else:
                    db.rollback()
            except StorageError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError("Could not spend recovery code") from exc
            if spent:
                logger.info("Recovery code used", extra={"user_id": user.id})
                return True
            # Spent by a concurrent login between the read and the delete.
            break

    logger.warning("Recovery code rejected", extra={"user_id": user.id})
    return False
