from typing import Optional, Dict
from sqlalchemy.ext.asyncio import AsyncSession
from app.middleware.logging import get_correlation_id
from app.models.activity_log import AuditRecord
from app.utils.clock import utcnow
import json
import logging

logger = logging.getLogger(__name__)


def validate_details(details: Optional[Dict]) -> None:
    """
    Validate that the details are JSON-serializable.
    Raise an exception if invalid.
    """
    if details:
        try:
            json.dumps(details)
        except TypeError as e:
            logger.error("Details validation failed. Non-serializable data: %s", details)
            raise ValueError(f"Details must be JSON-serializable. Error: {e}") from e


def log_activity(
    db: AsyncSession,
    tenant_id: str,
    action: str,
    actor: str,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    details: Optional[Dict] = None,
) -> AuditRecord:
    """
    Adds an audit record to the caller's session.

    The record commits together with the transition it describes, so the
    audit trail never disagrees with the registry.
    """
    validate_details(details)
    record = AuditRecord(
        tenant_id=tenant_id,
        action=action,
        actor=actor,
        from_status=from_status,
        to_status=to_status,
        correlation_id=get_correlation_id() or None,
        details=details or {},
        created_at=utcnow(),
    )
    db.add(record)
    logger.info(
        "Audit: tenant=%s action=%s actor=%s %s -> %s",
        tenant_id,
        action,
        actor,
        from_status,
        to_status,
        extra={"tenant_id": tenant_id, "event": action},
    )
    return record
