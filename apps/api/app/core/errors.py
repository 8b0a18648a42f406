"""Errors raised by the two-factor services.

Services raise these; the HTTP layer decides which status each one maps to.
"""


class TwoFactorError(Exception):
    pass


class TwoFactorNotConfigured(TwoFactorError):
    """The account has no TOTP secret to verify against."""


class TwoFactorAlreadyEnabled(TwoFactorError):
    pass


class TwoFactorAuthenticationTokenInvalid(TwoFactorError):
    """The submitted TOTP token did not verify. The caller should re-prompt."""


class DecryptionError(TwoFactorError):
    """Stored ciphertext is malformed or was encrypted with another key."""


class RecordNotFound(TwoFactorError):
    pass


class StorageError(TwoFactorError):
    pass
