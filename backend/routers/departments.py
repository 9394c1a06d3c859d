# routers/departments.py — Department registry (names and badge colours)
import logging
import re
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_approved, require_permission, CurrentUser
from database import get_db_session
from models import Department, Task, User

logger = logging.getLogger("taskwise.departments")

router = APIRouter(prefix="/api/v1/departments", tags=["Departments"])

HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


# --- Schemas ---

def _check_color(v: Optional[str]) -> Optional[str]:
    if v is not None and not HEX_COLOR.match(v):
        raise ValueError("Colour must be a hex value like #1a2b3c")
    return v


class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    depcolor: str = "#6366f1"

    @field_validator("depcolor")
    @classmethod
    def validate_depcolor(cls, v):
        return _check_color(v)


class DepartmentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    depcolor: Optional[str] = None

    @field_validator("depcolor")
    @classmethod
    def validate_depcolor(cls, v):
        return _check_color(v)


class DepartmentOut(BaseModel):
    id: str
    name: str
    depcolor: str


def _dept_out(d: Department) -> DepartmentOut:
    return DepartmentOut(id=d.id, name=d.name, depcolor=d.depcolor)


async def _get_or_404(db: AsyncSession, department_id: str) -> Department:
    result = await db.execute(select(Department).where(Department.id == department_id))
    dept = result.scalar_one_or_none()
    if not dept:
        raise HTTPException(status_code=404, detail="Department not found")
    return dept


async def _ensure_unique(db: AsyncSession, name: str, exclude_id: Optional[str] = None) -> None:
    stmt = select(Department.id).where(func.lower(Department.name) == name.lower())
    if exclude_id:
        stmt = stmt.where(Department.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise HTTPException(status_code=409, detail=f"Department '{name}' already exists")


# --- Endpoints ---

@router.get("", response_model=List[DepartmentOut])
async def list_departments(
    user: CurrentUser = Depends(require_approved),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(Department).order_by(Department.name))
    return [_dept_out(d) for d in result.scalars().all()]


@router.post("", response_model=DepartmentOut, status_code=201)
async def create_department(
    data: DepartmentCreate,
    user: CurrentUser = Depends(require_permission("departments:write")),
    db: AsyncSession = Depends(get_db_session),
):
    name = data.name.strip()
    await _ensure_unique(db, name)
    dept = Department(name=name, depcolor=data.depcolor)
    db.add(dept)
    await db.commit()
    await db.refresh(dept)
    logger.info(f"Department '{name}' created by {user.email}")
    return _dept_out(dept)


@router.patch("/{department_id}", response_model=DepartmentOut)
async def update_department(
    department_id: str,
    data: DepartmentUpdate,
    user: CurrentUser = Depends(require_permission("departments:write")),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename or recolour; a rename carries over to users and tasks"""
    dept = await _get_or_404(db, department_id)

    if data.name is not None:
        name = data.name.strip()
        if name != dept.name:
            await _ensure_unique(db, name, exclude_id=dept.id)
            old_name = dept.name
            await db.execute(update(User).where(User.department == old_name).values(department=name))
            await db.execute(update(Task).where(Task.department == old_name).values(department=name))
            dept.name = name
    if data.depcolor is not None:
        dept.depcolor = data.depcolor

    db.add(dept)
    await db.commit()
    await db.refresh(dept)
    return _dept_out(dept)


@router.delete("/{department_id}")
async def delete_department(
    department_id: str,
    user: CurrentUser = Depends(require_permission("departments:write")),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete an unused department"""
    dept = await _get_or_404(db, department_id)

    users = (await db.execute(select(func.count(User.id)).where(User.department == dept.name))).scalar() or 0
    tasks = (await db.execute(select(func.count(Task.id)).where(Task.department == dept.name))).scalar() or 0
    if users or tasks:
        raise HTTPException(
            status_code=409,
            detail=f"Department '{dept.name}' is still used by {users} user(s) and {tasks} task(s)",
        )

    await db.delete(dept)
    await db.commit()
    logger.info(f"Department '{dept.name}' deleted by {user.email}")
    return {"deleted": department_id}
