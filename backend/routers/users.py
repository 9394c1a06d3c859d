# routers/users.py — User administration (approval, roles, departments)
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    require_approved, require_min_role, require_permission,
    AuthService, CurrentUser, MIN_DISPLAY_NAME_LENGTH,
)
from database import get_db_session
from models import Department, User, UserRole, UserStatus

logger = logging.getLogger("taskwise.users")

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    email: str
    display_name: str
    photo_url: Optional[str] = None
    role: str
    status: str
    department: Optional[str] = None
    last_login_at: Optional[str] = None
    created_at: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=MIN_DISPLAY_NAME_LENGTH)
    photo_url: Optional[str] = None


class UserAdminUpdate(BaseModel):
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None
    department: Optional[str] = None


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        display_name=u.display_name or "",
        photo_url=u.photo_url,
        role=u.role.value,
        status=u.status.value,
        department=u.department,
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    )


def can_edit_user(editor: CurrentUser, target: User) -> bool:
    """Sysadmins edit anyone; depadmins edit non-sysadmins of their own department."""
    if editor.role == UserRole.SYSADMIN.value:
        return True
    if editor.role == UserRole.DEPADMIN.value:
        return (
            editor.department is not None
            and target.department == editor.department
            and target.role != UserRole.SYSADMIN
        )
    return False


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    target = result.scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    user: CurrentUser = Depends(require_permission("users:read")),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=100, le=500),
    offset: int = Query(default=0, ge=0),
    status: Optional[UserStatus] = None,
):
    """Sysadmins list everyone; depadmins list their own department"""
    stmt = select(User).order_by(User.created_at.desc()).offset(offset).limit(limit)
    if user.role == UserRole.DEPADMIN.value:
        if not user.department:
            return []
        stmt = stmt.where(User.department == user.department)
    if status is not None:
        stmt = stmt.where(User.status == status)

    result = await db.execute(stmt)
    return [_user_to_out(u) for u in result.scalars().all()]


@router.patch("/me", response_model=UserOut)
async def update_profile(
    update: ProfileUpdate,
    current_user: CurrentUser = Depends(require_approved),
    db: AsyncSession = Depends(get_db_session),
):
    """Update own display name or photo reference"""
    target = await _get_user_or_404(db, current_user.id)
    if update.display_name is not None:
        target.display_name = update.display_name.strip()
    if update.photo_url is not None:
        target.photo_url = update.photo_url or None

    db.add(target)
    await db.commit()
    await db.refresh(target)
    return _user_to_out(target)


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    current_user: CurrentUser = Depends(require_approved),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a user: yourself, or anyone you administer"""
    target = await _get_user_or_404(db, user_id)
    if target.id != current_user.id and not can_edit_user(current_user, target):
        raise HTTPException(status_code=404, detail="User not found")
    return _user_to_out(target)


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    update: UserAdminUpdate,
    current_user: CurrentUser = Depends(require_min_role(UserRole.DEPADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Change role, department or account state of a user"""
    target = await _get_user_or_404(db, user_id)
    if not can_edit_user(current_user, target):
        raise HTTPException(status_code=403, detail="You cannot edit this user")

    is_sysadmin = current_user.role == UserRole.SYSADMIN.value
    fields = update.model_fields_set

    if "role" in fields and update.role == UserRole.SYSADMIN and not is_sysadmin:
        raise HTTPException(status_code=403, detail="Only sysadmins can grant the sysadmin role")

    department = target.department
    if "department" in fields:
        department = update.department or None
        if department != target.department and not is_sysadmin:
            raise HTTPException(status_code=403, detail="Only sysadmins can move users between departments")
        if department is not None:
            exists = await db.execute(select(Department.id).where(Department.name == department))
            if exists.scalar_one_or_none() is None:
                raise HTTPException(status_code=400, detail=f"Unknown department: {department}")

    if "status" in fields and update.status is not None:
        if update.status == UserStatus.PENDING:
            raise HTTPException(status_code=400, detail="Accounts cannot be set back to pending")
        if update.status == UserStatus.APPROVED and not department:
            raise HTTPException(status_code=400, detail="Assign a department before approving this user")

    if "role" in fields and update.role is not None:
        target.role = update.role
    if "department" in fields:
        target.department = department
    if "status" in fields and update.status is not None:
        target.status = update.status

    db.add(target)
    await db.commit()
    await db.refresh(target)
    logger.info(
        f"{current_user.email} updated {target.email}: "
        f"role={target.role.value} status={target.status.value} department={target.department}"
    )
    return _user_to_out(target)
