import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from apps.api.app.core.config import settings
from apps.api.app.core.errors import DecryptionError


def _fernet_from_raw_key(raw_key: str) -> Fernet:
    # Accepts any key string and derives a stable Fernet key from it.
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class FernetSecretCipher:
    """Encrypts TOTP secrets at rest."""

    def __init__(self, raw_key: Optional[str] = None):
        self._fernet = _fernet_from_raw_key(raw_key or settings.ENCRYPTION_KEY)

    def encrypt(self, plain_text: str) -> str:
        return self._fernet.encrypt(plain_text.encode("utf-8")).decode("utf-8")

    def decrypt(self, cipher_text: str) -> str:
        try:
            plain = self._fernet.decrypt(cipher_text.encode("utf-8"))
        except InvalidToken as exc:
            raise DecryptionError("Stored secret could not be decrypted") from exc
        return plain.decode("utf-8")
