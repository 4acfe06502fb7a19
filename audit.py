import json
import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog

logger = logging.getLogger(__name__)


async def write_audit_log(
    db: AsyncSession,
    action: str,
    actor_user_id: Optional[int] = None,
    company_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[dict] = None,
    request: Optional[Request] = None,
):
    """
    Record an audit trail entry.

    Called after the business change has been committed; a failure here is
    logged and never surfaces to the caller.
    """
    ip_address = None
    user_agent = None
    if request is not None:
        forwarded = request.headers.get("x-forwarded-for")
        ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
        user_agent = request.headers.get("user-agent")

    try:
        db.add(AuditLog(
            actor_user_id=actor_user_id,
            company_id=company_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=json.dumps(metadata, default=str) if metadata else None,
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        await db.commit()
    except Exception as e:
        logger.error(f"❌ Failed to write audit log '{action}': {e}")
        await db.rollback()
