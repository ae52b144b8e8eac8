"""Audit trail for user actions on orders and challenges"""
import logging
from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from order_placement.models.audit import Audit
from order_placement.core.enums import AuditAction
from order_placement.core.metrics import audit_logs_created
from order_placement.utils.hashing import payload_hash

logger = logging.getLogger(__name__)


def _as_dict(payload: Any) -> dict:
    if hasattr(payload, "model_dump"):
        return payload.model_dump(exclude_unset=True)
    if isinstance(payload, dict):
        return payload
    return {}


async def log_audit(
    db: AsyncSession,
    user_id: int,
    action: AuditAction,
    payload: Optional[Any] = None,
    resource_id: Optional[int] = None,
) -> None:

    try:
        audit_record = Audit(
            user_id=int(user_id),
            action=str(action),
            resource_id=resource_id,
            payload_hash=payload_hash(_as_dict(payload)),
        )
        db.add(audit_record)
        await db.flush()
        audit_logs_created.labels(action=str(action)).inc()

    except Exception as e:
        logger.error(f"Audit logging failed for action {action}: {e}", exc_info=True)
