from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.core.security import decode_token
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.services.crypto import FernetSecretCipher
from apps.api.app.services.totp import PyOtpVerifier
from apps.api.app.services.two_factor import TwoFactorSetupService, ToggleTwoFactorService


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Validates JWT token and returns the authenticated user.
    """

    payload = decode_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
        )
    if payload.get("typ") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
        )

    user_id = payload.get("uid")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    return user


def get_cipher() -> FernetSecretCipher:
    return FernetSecretCipher()


def get_verifier() -> PyOtpVerifier:
    return PyOtpVerifier()


def get_toggle_service(
    db: Session = Depends(get_db),
    cipher: FernetSecretCipher = Depends(get_cipher),
    verifier: PyOtpVerifier = Depends(get_verifier),
) -> ToggleTwoFactorService:
    return ToggleTwoFactorService(
        db,
        cipher=cipher,
        verifier=verifier,
        window=settings.TWO_FACTOR_WINDOW,
    )


def get_setup_service(
    db: Session = Depends(get_db),
    cipher: FernetSecretCipher = Depends(get_cipher),
    verifier: PyOtpVerifier = Depends(get_verifier),
) -> TwoFactorSetupService:
    return TwoFactorSetupService(db, cipher=cipher, verifier=verifier)
