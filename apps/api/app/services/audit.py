import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from apps.api.app.core.logging import get_logger
from apps.api.app.models.audit_log import AuditLog

logger = get_logger(__name__)


def log_audit_event(
    db: Session,
    action: str,
    user_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
):
    """Stage an audit row in the caller's transaction; committing is the caller's job."""
    db.add(
        AuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=json.dumps(details, sort_keys=True) if details else None,
        )
    )
    db.flush()
    logger.info(action, extra={"user_id": user_id, "entity_type": entity_type})
