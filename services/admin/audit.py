"""
services/admin/audit.py
Append-only admin audit trail. Every admin mutation calls log_admin_action
before returning.
"""

from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminAuditLog, User


def log_admin_action(
    db: AsyncSession,
    admin: Optional[User],
    action: str,
    entity_type: str,
    entity_id,
    notes: Optional[str] = None,
    payload: Optional[dict] = None,
    request: Optional[Request] = None,
) -> AdminAuditLog:
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id if admin else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        notes=notes,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)
    return log
