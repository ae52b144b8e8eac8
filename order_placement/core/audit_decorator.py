import logging
from functools import wraps
from typing import Callable
from sqlalchemy.ext.asyncio import AsyncSession
from order_placement.core.audit_log import log_audit
from order_placement.core.enums import AuditAction

logger = logging.getLogger(__name__)

_RESOURCE_KEYS = ("order_id", "batch_id", "session_token")


def audit_log(action: AuditAction) -> Callable:
    """Record an audit row after the endpoint returns successfully.

    The endpoint must take ``db`` and ``current_user`` as keyword arguments,
    which FastAPI always does for dependencies.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            result = await func(*args, **kwargs)

            db: AsyncSession = kwargs.get("db")
            current_user = kwargs.get("current_user")

            if not db or not current_user:
                return result

            payload = {}
            for key in ["payload", "options", "body"]:
                if key in kwargs and kwargs[key] is not None:
                    payload = kwargs[key]
                    break

            resource_id = None
            for key in _RESOURCE_KEYS:
                if isinstance(kwargs.get(key), int):
                    resource_id = kwargs[key]
                    break

            await log_audit(db, current_user.id, action, payload, resource_id=resource_id)
            await db.commit()
            return result

        return wrapper
    return decorator
