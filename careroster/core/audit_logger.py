from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from careroster.db.models import AuditLogModel


async def log_action(
    session: AsyncSession,
    action: str,
    actor_id: str | UUID | None,
    resource_type: str | None = None,
    resource_id: str | UUID | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLogModel:
    """Log an action to the audit trail.

    The row joins the caller's transaction; the caller is responsible for commit.

    Args:
        session: Active DB session
        action: Action name (e.g., "DELIVERY_CANCEL", "DELIVERY_APPROVE")
        actor_id: Staff/user id supplied by the identity layer
        resource_type: Type of resource affected
        resource_id: ID of resource affected
        details: Additional details
    """
    audit_entry = AuditLogModel(
        actor_id=str(actor_id) if actor_id is not None else None,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
    )
    session.add(audit_entry)
    return audit_entry
