from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api.app.core.errors import (
    DecryptionError,
    RecordNotFound,
    StorageError,
    TwoFactorAlreadyEnabled,
    TwoFactorAuthenticationTokenInvalid,
    TwoFactorNotConfigured,
)
from apps.api.app.core.logging import get_logger
from apps.api.app.core.time import utcnow
from apps.api.app.models.user import User
from apps.api.app.services.audit import log_audit_event
from apps.api.app.services.crypto import FernetSecretCipher
from apps.api.app.services.recovery_codes import CodeGenerator
from apps.api.app.services.repositories import RecoveryTokenRepository, UserRepository
from apps.api.app.services.totp import PyOtpVerifier

logger = get_logger(__name__)


class ToggleTwoFactorService:
    def __init__(
        self,
        db: Session,
        cipher: FernetSecretCipher,
        verifier: PyOtpVerifier,
        window: int,
        users: Optional[UserRepository] = None,
        recovery_tokens: Optional[RecoveryTokenRepository] = None,
        code_generator: Optional[CodeGenerator] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.cipher = cipher
        self.verifier = verifier
        self.window = window
        self.users = users or UserRepository(db)
        self.recovery_tokens = recovery_tokens or RecoveryTokenRepository(db)
        self.code_generator = code_generator or CodeGenerator()
        self.clock = clock

    @staticmethod
    def target_state(user: User, toggle_state: Optional[bool] = None) -> bool:
        """The 2FA state `handle` will leave the account in."""
        if toggle_state is None:
            return not user.use_totp
        return toggle_state

    def handle(self, user: User, token: str, toggle_state: Optional[bool] = None) -> list[str]:
        """
        Toggle 2FA on an account only if the token provided is valid.

        `toggle_state` forces the new state; None flips the current one.
        Returns the plaintext recovery codes when 2FA is being enabled, which
        is the only point at which they can be shown to the user. Disabling
        removes every recovery code and returns an empty list.
        """
        if not user.totp_secret:
            raise TwoFactorNotConfigured("Two-factor authentication has not been set up for this account.")

        try:
            secret = self.cipher.decrypt(user.totp_secret)
        except DecryptionError:
            logger.warning("TOTP secret could not be decrypted", extra={"user_id": user.id})
            raise

        if not self.verifier.verify_key(secret, token, self.window):
            logger.warning("Rejected 2FA token", extra={"user_id": user.id})
            raise TwoFactorAuthenticationTokenInvalid("The token provided is not valid.")

        enabling = self.target_state(user, toggle_state)

        tokens: list[str] = []
        try:
            if enabling:
                # Old codes are left in place when an enabled account is
                # re-enabled explicitly.
                tokens = self.code_generator.generate()
                self.recovery_tokens.insert(
                    [
                        {"user_id": user.id, "token": self.code_generator.hash(code)}
                        for code in tokens
                    ]
                )
            else:
                self.recovery_tokens.delete_for_user(user.id)

            self.users.update(
                user.id,
                {
                    "use_totp": enabling,
                    "totp_authenticated_at": self.clock(),
                },
            )
            log_audit_event(
                self.db,
                action="auth.2fa.enabled" if enabling else "auth.2fa.disabled",
                user_id=user.id,
                entity_type="user",
                entity_id=user.id,
                details={"enabled": enabling, "recovery_codes": len(tokens)},
            )
            self.db.commit()
        except (RecordNotFound, StorageError):
            self.db.rollback()
            logger.error("2FA toggle rolled back", extra={"user_id": user.id})
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("2FA toggle rolled back", extra={"user_id": user.id})
            raise StorageError("Could not persist two-factor state") from exc

        return tokens


class TwoFactorSetupService:
    """Issues a fresh TOTP secret for an account that has 2FA disabled."""

    def __init__(
        self,
        db: Session,
        cipher: FernetSecretCipher,
        verifier: PyOtpVerifier,
        users: Optional[UserRepository] = None,
    ):
        self.db = db
        self.cipher = cipher
        self.verifier = verifier
        self.users = users or UserRepository(db)

    def handle(self, user: User) -> tuple[str, str]:
        if user.use_totp:
            raise TwoFactorAlreadyEnabled("Two-factor authentication is already enabled on this account.")

        email = user.email
        secret = self.verifier.generate_secret()
        try:
            self.users.update(user.id, {"totp_secret": self.cipher.encrypt(secret)})
            log_audit_event(
                self.db,
                action="auth.2fa.setup",
                user_id=user.id,
                entity_type="user",
                entity_id=user.id,
            )
            self.db.commit()
        except (RecordNotFound, StorageError):
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Could not store TOTP secret") from exc

        return secret, self.verifier.provisioning_uri(secret, email)
