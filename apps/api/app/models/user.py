from apps.api.app.db.session import Base
from sqlalchemy import Boolean, Column, DateTime, String, Text
from sqlalchemy.sql import func
import uuid


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    totp_secret = Column(Text, nullable=True)  # Fernet ciphertext
    use_totp = Column(Boolean, nullable=False, default=False)
    totp_authenticated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
