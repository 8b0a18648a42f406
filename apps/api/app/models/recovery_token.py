import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from apps.api.app.db.session import Base


class RecoveryToken(Base):
    __tablename__ = "recovery_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    token = Column(String, nullable=False)  # bcrypt hash, plaintext is never stored
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
