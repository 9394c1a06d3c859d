# models.py — Database models for TaskWise
# - UUID string primary keys
# - 3-tier role system (sysadmin, depadmin, user) with account approval states
# - Department-scoped tasks with per-status ordering
# - Append-only task history rows

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    SYSADMIN = "sysadmin"
    DEPADMIN = "depadmin"
    USER = "user"


class UserStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"


class TaskStatus(str, PyEnum):
    IN_PROGRESS = "In Progress"
    TO_BE_REVIEWED = "To Be Reviewed"
    DEPRECATED = "Deprecated"
    DONE = "Done"
    ARCHIVED = "Archived"


class HistoryField(str, PyEnum):
    NAME = "name"
    DEPARTMENT = "department"
    USER_ID = "userId"
    COMMENTS = "comments"
    STATUS = "status"


# ============================================================
# DEPARTMENTS
# ============================================================

class Department(Base):
    __tablename__ = "departments"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, unique=True, index=True)
    depcolor = Column(String, nullable=False, default="#6366f1")  # Hex color for badges
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# USERS (profile overlay on the identity account)
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.USER)
    status = Column(SQLEnum(UserStatus), nullable=False, default=UserStatus.PENDING, index=True)
    department = Column(String, nullable=True, index=True)  # Department name
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    tasks = relationship("Task", back_populates="owner")


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    jti = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    """Task card; `order` is the rank inside its status column"""
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    department = Column(String, nullable=True, index=True)
    comments = Column(Text, nullable=False, default="")
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.IN_PROGRESS)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    order = Column("order", Integer, nullable=False, default=0)
    done_at = Column(DateTime(timezone=True), nullable=True)
    is_reviewed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User", back_populates="tasks")
    history = relationship(
        "TaskHistory",
        back_populates="task",
        order_by="TaskHistory.sequence",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_task_status_order", "status", "order"),
        Index("idx_task_dept_status", "department", "status"),
    )


class TaskHistory(Base):
    """Append-only audit entry; one row per changed field per save"""
    __tablename__ = "task_history"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    field = Column(SQLEnum(HistoryField), nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    changed_by = Column(String, nullable=False)  # user id, or "system" for the archival sweep
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    task = relationship("Task", back_populates="history")

    __table_args__ = (
        UniqueConstraint("task_id", "sequence", name="uq_history_task_seq"),
    )
