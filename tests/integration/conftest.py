import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

# Ensure project root is importable in local and CI runs.
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Force test config before importing app modules.
TEST_DB_PATH = Path(tempfile.gettempdir()) / "panel_two_factor_test.db"
if TEST_DB_PATH.exists():
    TEST_DB_PATH.unlink()

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["TWO_FACTOR_WINDOW"] = "1"

from apps.api.app.main import app
from apps.api.app.core.security import get_password_hash
from apps.api.app.db.session import Base, SessionLocal, engine
from apps.api.app.models.user import User


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def user(db):
    row = User(
        email="owner@test.com",
        hashed_password=get_password_hash("OwnerPass123!"),
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def fast_hashes():
    return CryptContext(schemes=["bcrypt"], bcrypt__rounds=4)


@pytest.fixture()
def client(db, user):
    with TestClient(app) as tc:
        yield tc
