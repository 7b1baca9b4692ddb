"""Append-only audit trail."""
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal.models import AuditLog

logger = logging.getLogger(__name__)


def client_ip(request: Request | None) -> str:
    if request is None:
        return "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def record_audit(
    db: Session,
    action: str,
    *,
    user_id: int | None = None,
    resource_type: str | None = None,
    resource_id=None,
    request: Request | None = None,
) -> None:
    """Write one audit row in its own commit; failures are logged, never raised."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=None if resource_id is None else str(resource_id),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") if request is not None else None,
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write audit entry %s", action)
