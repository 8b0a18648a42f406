from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from apps.api.app.api.deps import (
    get_cipher,
    get_current_user,
    get_setup_service,
    get_toggle_service,
    get_verifier,
)
from apps.api.app.core.config import settings
from apps.api.app.core.errors import (
    DecryptionError,
    RecordNotFound,
    StorageError,
    TwoFactorAlreadyEnabled,
    TwoFactorAuthenticationTokenInvalid,
    TwoFactorNotConfigured,
)
from apps.api.app.core.security import (
    verify_password,
    get_password_hash,
    create_access_token,
)
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.schemas.two_factor import (
    RegisterRequest,
    TwoFactorSetupOut,
    TwoFactorToggleOut,
    TwoFactorToggleRequest,
)
from apps.api.app.services.audit import log_audit_event
from apps.api.app.services.crypto import FernetSecretCipher
from apps.api.app.services.recovery_codes import consume_recovery_code
from apps.api.app.services.repositories import UserRepository
from apps.api.app.services.totp import PyOtpVerifier
from apps.api.app.services.two_factor import TwoFactorSetupService, ToggleTwoFactorService

router = APIRouter(prefix="/auth", tags=["auth"])


def _passes_second_factor(
    db: Session,
    user: User,
    otp: Optional[str],
    recovery_code: Optional[str],
    cipher: FernetSecretCipher,
    verifier: PyOtpVerifier,
) -> bool:
    if otp and user.totp_secret:
        secret = cipher.decrypt(user.totp_secret)
        if verifier.verify_key(secret, otp, settings.TWO_FACTOR_WINDOW):
            return True
    if recovery_code:
        return consume_recovery_code(db, user, recovery_code)
    return False


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    db: Session = Depends(get_db),
):
    if UserRepository(db).get_by_email(payload.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    new_user = User(
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
    )
    db.add(new_user)
    db.flush()
    log_audit_event(
        db,
        action="auth.register.success",
        user_id=new_user.id,
        entity_type="user",
        entity_id=new_user.id,
        details={"email": new_user.email},
    )
    db.commit()

    return {"message": "User created successfully"}


@router.post("/login")
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    otp: Optional[str] = Form(default=None),
    recovery_code: Optional[str] = Form(default=None),
    db: Session = Depends(get_db),
    cipher: FernetSecretCipher = Depends(get_cipher),
    verifier: PyOtpVerifier = Depends(get_verifier),
):
    user = UserRepository(db).get_by_email(form_data.username)

    if not user or not verify_password(
        form_data.password,
        user.hashed_password,
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
        )

    if user.use_totp:
        if not otp and not recovery_code:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="OTP required",
            )
        try:
            passed = _passes_second_factor(db, user, otp, recovery_code, cipher, verifier)
        except DecryptionError:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Two-factor secret is unreadable",
            )
        except StorageError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=str(exc),
            )
        if not passed:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid OTP",
            )

    access_token = create_access_token(
        data={
            "sub": user.email,
            "uid": user.id,
        },
    )
    log_audit_event(
        db,
        action="auth.login.success",
        user_id=user.id,
        entity_type="user",
        entity_id=user.id,
        details={"email": user.email},
    )
    db.commit()

    return {
        "access_token": access_token,
        "token_type": "bearer",
    }


@router.post("/2fa/setup", response_model=TwoFactorSetupOut)
def setup_2fa(
    current_user: User = Depends(get_current_user),
    service: TwoFactorSetupService = Depends(get_setup_service),
):
    try:
        secret, otpauth_uri = service.handle(current_user)
    except TwoFactorAlreadyEnabled as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except RecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    return {"secret": secret, "otpauth_uri": otpauth_uri}


@router.post("/2fa", response_model=TwoFactorToggleOut)
def toggle_2fa(
    payload: TwoFactorToggleRequest,
    current_user: User = Depends(get_current_user),
    service: ToggleTwoFactorService = Depends(get_toggle_service),
):
    enabled = service.target_state(current_user, payload.enabled)
    try:
        tokens = service.handle(current_user, payload.code, payload.enabled)
    except TwoFactorAuthenticationTokenInvalid as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except TwoFactorNotConfigured as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except DecryptionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    except RecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    return {"enabled": enabled, "tokens": tokens}
