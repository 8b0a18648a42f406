import random
import string
from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from apps.api.app.core.errors import (
    DecryptionError,
    RecordNotFound,
    StorageError,
    TwoFactorAuthenticationTokenInvalid,
    TwoFactorNotConfigured,
)
from apps.api.app.models.audit_log import AuditLog
from apps.api.app.models.recovery_token import RecoveryToken
from apps.api.app.db.session import SessionLocal
from apps.api.app.models.user import User
from apps.api.app.services.crypto import FernetSecretCipher
from apps.api.app.services.recovery_codes import CodeGenerator, consume_recovery_code
from apps.api.app.services.repositories import UserRepository
from apps.api.app.services.totp import PyOtpVerifier
from apps.api.app.services.two_factor import ToggleTwoFactorService

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class StubVerifier:
    def __init__(self, result: bool):
        self.result = result
        self.calls = []

    def verify_key(self, secret, token, window):
        self.calls.append((secret, token, window))
        return self.result


class FailingUserRepository(UserRepository):
    def update(self, user_id, fields):
        raise StorageError("database went away")


def _arm(db, user, enabled=False, secret="JBSWY3DPEHPK3PXP"):
    user.totp_secret = FernetSecretCipher().encrypt(secret)
    user.use_totp = enabled
    db.commit()
    return secret


def _service(db, fast_hashes, verifier=None, **kwargs):
    return ToggleTwoFactorService(
        db,
        cipher=FernetSecretCipher(),
        verifier=verifier or StubVerifier(True),
        window=4,
        code_generator=kwargs.pop("code_generator", CodeGenerator(hash_context=fast_hashes)),
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


def _token_count(db, user_id):
    return db.query(RecoveryToken).filter(RecoveryToken.user_id == user_id).count()


def _reload(db, user_id):
    db.expire_all()
    return db.get(User, user_id)


def test_toggle_from_disabled_enables_and_returns_codes(db, user, fast_hashes):
    secret = _arm(db, user)
    verifier = StubVerifier(True)

    codes = _service(db, fast_hashes, verifier).handle(user, "123456")

    assert verifier.calls == [(secret, "123456", 4)]
    assert len(codes) == 10
    assert len(set(codes)) == 10
    allowed = set(string.ascii_letters + string.digits)
    assert all(len(code) == 10 and set(code) <= allowed for code in codes)

    stored = db.query(RecoveryToken).filter(RecoveryToken.user_id == user.id).all()
    assert len(stored) == 10
    assert all(row.token not in codes for row in stored)
    assert all(any(fast_hashes.verify(code, row.token) for row in stored) for code in codes)

    refreshed = _reload(db, user.id)
    assert refreshed.use_totp is True
    assert refreshed.totp_authenticated_at.replace(tzinfo=timezone.utc) == FIXED_NOW


def test_toggle_from_enabled_disables_and_removes_codes(db, user, fast_hashes):
    _arm(db, user)
    service = _service(db, fast_hashes)
    service.handle(user, "123456")
    assert _token_count(db, user.id) == 10

    codes = service.handle(_reload(db, user.id), "123456")

    assert codes == []
    assert _token_count(db, user.id) == 0
    assert _reload(db, user.id).use_totp is False


def test_invalid_token_changes_nothing(db, user, fast_hashes):
    _arm(db, user, enabled=True)
    db.add(RecoveryToken(user_id=user.id, token="existing-hash"))
    db.commit()

    with pytest.raises(TwoFactorAuthenticationTokenInvalid):
        _service(db, fast_hashes, StubVerifier(False)).handle(user, "000000", False)

    refreshed = _reload(db, user.id)
    assert refreshed.use_totp is True
    assert refreshed.totp_authenticated_at is None
    assert _token_count(db, user.id) == 1
    assert db.query(AuditLog).filter(AuditLog.action.like("auth.2fa.%")).count() == 0


def test_explicit_enable_on_enabled_account_issues_new_codes(db, user, fast_hashes):
    _arm(db, user)
    service = _service(db, fast_hashes)
    first = service.handle(user, "123456")

    second = service.handle(_reload(db, user.id), "123456", True)

    assert len(second) == 10
    assert set(first).isdisjoint(second)
    # Codes from the first call are kept alongside the new batch.
    assert _token_count(db, user.id) == 20
    assert _reload(db, user.id).use_totp is True


def test_explicit_disable_on_disabled_account_creates_no_codes(db, user, fast_hashes):
    _arm(db, user)

    codes = _service(db, fast_hashes).handle(user, "123456", False)

    assert codes == []
    assert _token_count(db, user.id) == 0
    refreshed = _reload(db, user.id)
    assert refreshed.use_totp is False
    assert refreshed.totp_authenticated_at is not None


def test_missing_secret_is_a_configuration_error(db, user, fast_hashes):
    with pytest.raises(TwoFactorNotConfigured):
        _service(db, fast_hashes).handle(user, "123456")
    assert _token_count(db, user.id) == 0


def test_undecryptable_secret_raises_without_mutation(db, user, fast_hashes):
    user.totp_secret = FernetSecretCipher("some-other-key").encrypt("JBSWY3DPEHPK3PXP")
    db.commit()
    verifier = StubVerifier(True)

    with pytest.raises(DecryptionError):
        _service(db, fast_hashes, verifier).handle(user, "123456")

    assert verifier.calls == []
    assert _reload(db, user.id).use_totp is False
    assert _token_count(db, user.id) == 0


def test_storage_failure_rolls_back_inserted_codes(db, user, fast_hashes):
    _arm(db, user)
    service = _service(db, fast_hashes, users=FailingUserRepository(db))

    with pytest.raises(StorageError):
        service.handle(user, "123456")

    assert _token_count(db, user.id) == 0
    assert _reload(db, user.id).use_totp is False


def test_storage_failure_rolls_back_deleted_codes(db, user, fast_hashes):
    _arm(db, user)
    _service(db, fast_hashes).handle(user, "123456")
    service = _service(db, fast_hashes, users=FailingUserRepository(db))

    with pytest.raises(StorageError):
        service.handle(_reload(db, user.id), "123456")

    assert _token_count(db, user.id) == 10
    assert _reload(db, user.id).use_totp is True


def test_unknown_user_rolls_back(db, fast_hashes):
    ghost = User(
        id="does-not-exist",
        email="ghost@test.com",
        hashed_password="x",
        totp_secret=FernetSecretCipher().encrypt("JBSWY3DPEHPK3PXP"),
        use_totp=False,
    )

    with pytest.raises(RecordNotFound):
        _service(db, fast_hashes).handle(ghost, "123456")

    assert _token_count(db, "does-not-exist") == 0


def test_seeded_generator_is_reproducible(db, user, fast_hashes):
    _arm(db, user)
    generator = CodeGenerator(rng=random.Random(1234), hash_context=fast_hashes)

    codes = _service(db, fast_hashes, code_generator=generator).handle(user, "123456")

    assert codes == CodeGenerator(rng=random.Random(1234)).generate()


def test_audit_event_recorded_with_state_change(db, user, fast_hashes):
    _arm(db, user)
    _service(db, fast_hashes).handle(user, "123456")

    event = db.query(AuditLog).filter(AuditLog.action == "auth.2fa.enabled").one()
    assert event.user_id == user.id
    assert '"recovery_codes": 10' in event.details


def test_real_totp_tokens_within_window(db, user, fast_hashes):
    secret = _arm(db, user, secret=pyotp.random_base32())
    totp = pyotp.TOTP(secret)
    service = _service(db, fast_hashes, verifier=PyOtpVerifier())
    service.window = 1

    stale = totp.at(datetime.now(timezone.utc) - timedelta(minutes=10))
    if stale != totp.now():
        with pytest.raises(TwoFactorAuthenticationTokenInvalid):
            service.handle(user, stale)

    other = pyotp.TOTP(pyotp.random_base32()).now()
    if other != totp.now():
        with pytest.raises(TwoFactorAuthenticationTokenInvalid):
            service.handle(user, other)

    drifted = totp.at(datetime.now(timezone.utc) - timedelta(seconds=30))
    assert len(service.handle(user, drifted)) == 10


def test_corrupt_base32_secret_is_a_decryption_error(db, user, fast_hashes):
    _arm(db, user, secret="not base32 at all!")
    service = _service(db, fast_hashes, verifier=PyOtpVerifier())

    with pytest.raises(DecryptionError):
        service.handle(user, "123456")

    assert _reload(db, user.id).use_totp is False
    assert _token_count(db, user.id) == 0


@pytest.mark.parametrize(
    "current, toggle_state, expected",
    [
        (False, None, True),
        (True, None, False),
        (True, True, True),
        (False, False, False),
        (False, True, True),
        (True, False, False),
    ],
)
def test_target_state(current, toggle_state, expected):
    user = User(use_totp=current)
    assert ToggleTwoFactorService.target_state(user, toggle_state) is expected


def test_generator_honours_explicit_count_and_length(fast_hashes):
    assert CodeGenerator(count=0, hash_context=fast_hashes).generate() == []

    codes = CodeGenerator(count=3, length=16, hash_context=fast_hashes).generate()
    assert len(codes) == 3
    assert all(len(code) == 16 for code in codes)


class InterleavingGenerator(CodeGenerator):
    """Runs `on_match` once, after a hash matches and before the caller deletes the row."""

    def __init__(self, on_match, **kwargs):
        super().__init__(**kwargs)
        self.on_match = on_match

    def verify(self, code, hashed):
        matched = super().verify(code, hashed)
        if matched and self.on_match:
            callback, self.on_match = self.on_match, None
            callback()
        return matched


def test_recovery_code_spent_once_by_concurrent_logins(db, user, fast_hashes):
    user_id = user.id
    db.add(RecoveryToken(user_id=user_id, token=fast_hashes.hash("AbCdEf1234")))
    db.commit()
    results = []

    def other_login():
        other = SessionLocal()
        try:
            spent = consume_recovery_code(
                other,
                other.get(User, user_id),
                "AbCdEf1234",
                CodeGenerator(hash_context=fast_hashes),
            )
            results.append(("other", spent))
        finally:
            other.close()

    generator = InterleavingGenerator(other_login, hash_context=fast_hashes)
    results.append(("first", consume_recovery_code(db, user, "AbCdEf1234", generator)))

    assert results == [("other", True), ("first", False)]
    assert _token_count(db, user_id) == 0


def test_recovery_code_rejected_after_use(db, user, fast_hashes):
    db.add(RecoveryToken(user_id=user.id, token=fast_hashes.hash("AbCdEf1234")))
    db.commit()
    generator = CodeGenerator(hash_context=fast_hashes)

    assert consume_recovery_code(db, user, "wrong-code", generator) is False
    assert consume_recovery_code(db, user, "AbCdEf1234", generator) is True
    assert consume_recovery_code(db, user, "AbCdEf1234", generator) is False
