# routers/errors.py — Error catalogue and recent operation failures
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from errors import ERROR_CATALOGUE, ErrorChannel, get_error_channel
from models import User, UserRole

router = APIRouter(prefix="/api/v1/errors", tags=["Error Registry"])


@router.get("/catalogue")
async def get_error_catalogue():
    """Every TW-{DOMAIN}-{NUMBER} code with its message, severity and HTTP status"""
    return {
        "total": len(ERROR_CATALOGUE),
        "codes": [{"code": code, **info} for code, info in ERROR_CATALOGUE.items()],
    }


@router.get("/recent")
async def list_recent_errors(
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(require_permission("errors:read")),
    channel: ErrorChannel = Depends(get_error_channel),
    db: AsyncSession = Depends(get_db_session),
) -> List[dict]:
    """Recent failures, newest first. Depadmins only see their department's users."""
    events = channel.recent(limit=200)
    if user.role != UserRole.SYSADMIN.value:
        result = await db.execute(select(User.id).where(User.department == user.department))
        members = set(result.scalars().all())
        events = [e for e in events if e.actor_id in members]
    return [e.to_dict() for e in events[:limit]]
