"""Initial TaskWise schema (departments, users, tasks, task history)

Revision ID: a1f3c5e7b9d2
Revises:
Create Date: 2024-04-02T09:15:41.207311
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1f3c5e7b9d2'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- departments ---
    op.create_table(
        'departments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('depcolor', sa.String(), nullable=False, server_default='#6366f1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index('ix_departments_name', 'departments', ['name'])

    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('photo_url', sa.String(), nullable=True),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.Enum('SYSADMIN', 'DEPADMIN', 'USER', name='userrole'), nullable=False, server_default='USER'),
        sa.Column('status', sa.Enum('PENDING', 'APPROVED', 'SUSPENDED', name='userstatus'), nullable=False, server_default='PENDING'),
        sa.Column('department', sa.String(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_status', 'users', ['status'])
    op.create_index('ix_users_department', 'users', ['department'])

    # --- revoked_tokens ---
    op.create_table(
        'revoked_tokens',
        sa.Column('jti', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('jti'),
    )
    op.create_index('ix_revoked_tokens_user_id', 'revoked_tokens', ['user_id'])

    # --- tasks ---
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('department', sa.String(), nullable=True),
        sa.Column('comments', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.Enum('IN_PROGRESS', 'TO_BE_REVIEWED', 'DEPRECATED', 'DONE', 'ARCHIVED', name='taskstatus'), nullable=False, server_default='IN_PROGRESS'),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('done_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_reviewed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_department', 'tasks', ['department'])
    op.create_index('ix_tasks_user_id', 'tasks', ['user_id'])
    op.create_index('idx_task_status_order', 'tasks', ['status', 'order'])
    op.create_index('idx_task_dept_status', 'tasks', ['department', 'status'])

    # --- task_history ---
    op.create_table(
        'task_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('field', sa.Enum('NAME', 'DEPARTMENT', 'USER_ID', 'COMMENTS', 'STATUS', name='historyfield'), nullable=False),
        sa.Column('old_value', sa.JSON(), nullable=True),
        sa.Column('new_value', sa.JSON(), nullable=True),
        sa.Column('changed_by', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'sequence', name='uq_history_task_seq'),
    )
    op.create_index('ix_task_history_task_id', 'task_history', ['task_id'])


def downgrade() -> None:
    op.drop_table('task_history')
    op.drop_table('tasks')
    op.drop_table('revoked_tokens')
    op.drop_table('users')
    op.drop_table('departments')
    op.execute("DROP TYPE IF EXISTS historyfield")
    op.execute("DROP TYPE IF EXISTS taskstatus")
    op.execute("DROP TYPE IF EXISTS userstatus")
    op.execute("DROP TYPE IF EXISTS userrole")
