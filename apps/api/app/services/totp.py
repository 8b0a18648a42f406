import binascii

import pyotp

from apps.api.app.core.config import settings
from apps.api.app.core.errors import DecryptionError


class PyOtpVerifier:
    """RFC 6238 TOTP with 30-second steps and 6 digits."""

    def __init__(self, issuer: str = ""):
        self.issuer = issuer or settings.TWO_FACTOR_ISSUER

    def verify_key(self, secret: str, token: str, window: int) -> bool:
        # Accepts codes from `window` steps either side of the current one.
        try:
            return pyotp.TOTP(secret).verify(token, valid_window=window)
        except binascii.Error as exc:
            raise DecryptionError("Stored secret is not valid base32") from exc

    def generate_secret(self) -> str:
        return pyotp.random_base32(length=32)

    def provisioning_uri(self, secret: str, email: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(
            name=email,
            issuer_name=self.issuer,
        )
