"""Initial VentyLab schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    # === Accounts ===

    op.create_table(
        'users',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False, server_default='STUDENT'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'teacher_students',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('teacher_id', UUID, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('student_id', UUID, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
    )
    op.create_index('ix_teacher_students_pair', 'teacher_students', ['teacher_id', 'student_id'], unique=True)

    # === Content ===

    op.create_table(
        'levels',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('order_index', sa.Integer, nullable=False, default=0),
        sa.Column('is_optional', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_levels_order', 'levels', ['order_index'])
    op.create_index('ix_levels_title', 'levels', ['title'], unique=True)

    op.create_table(
        'level_prerequisites',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('level_id', UUID, sa.ForeignKey('levels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prerequisite_level_id', UUID, sa.ForeignKey('levels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
    )
    op.create_index('ix_level_prerequisites_pair', 'level_prerequisites', ['level_id', 'prerequisite_level_id'], unique=True)

    op.create_table(
        'modules',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('level_id', UUID, sa.ForeignKey('levels.id', ondelete='SET NULL')),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('difficulty', sa.String(20), nullable=False, server_default='beginner'),
        sa.Column('estimated_duration_min', sa.Integer, default=30),
        sa.Column('order_index', sa.Integer, nullable=False, default=0),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('extra_data', sa.JSON, default={}),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_modules_level_order', 'modules', ['level_id', 'order_index'])

    op.create_table(
        'module_prerequisites',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('module_id', UUID, sa.ForeignKey('modules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prerequisite_id', UUID, sa.ForeignKey('modules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
    )
    op.create_index('ix_module_prerequisites_pair', 'module_prerequisites', ['module_id', 'prerequisite_id'], unique=True)

    op.create_table(
        'lessons',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('module_id', UUID, sa.ForeignKey('modules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('order_index', sa.Integer, nullable=False, default=0),
        sa.Column('estimated_time_min', sa.Integer, default=10),
        sa.Column('requires_quiz', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('requires_case', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('passing_score', sa.Integer),
        sa.Column('is_published', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_lessons_module_order', 'lessons', ['module_id', 'order_index'])
    op.create_index('ix_lessons_module_slug', 'lessons', ['module_id', 'slug'], unique=True)

    op.create_table(
        'steps',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('lesson_id', UUID, sa.ForeignKey('lessons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(255)),
        sa.Column('content_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('content', sa.JSON, default={}),
        sa.Column('order_index', sa.Integer, nullable=False, default=0),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_steps_lesson_order', 'steps', ['lesson_id', 'order_index'])

    # === Progress ===

    op.create_table(
        'user_progress',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('user_id', UUID, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('module_id', UUID, sa.ForeignKey('modules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='NOT_STARTED'),
        sa.Column('is_module_completed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('completed_lessons_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_lessons', sa.Integer, nullable=False, server_default='0'),
        sa.Column('progress_percentage', sa.Integer, nullable=False, server_default='0'),
        sa.Column('time_spent', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_accessed_lesson_id', UUID, sa.ForeignKey('lessons.id', ondelete='SET NULL')),
        sa.Column('last_accessed_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_user_progress_user_module', 'user_progress', ['user_id', 'module_id'], unique=True)

    op.create_table(
        'lesson_completions',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('user_id', UUID, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('lesson_id', UUID, sa.ForeignKey('lessons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_completed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('current_step_index', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_steps', sa.Integer, nullable=False, server_default='1'),
        sa.Column('time_spent', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_accessed', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_lesson_completions_user_lesson', 'lesson_completions', ['user_id', 'lesson_id'], unique=True)

    # Legacy single-table progress, source of scripts/migrate_progress.py
    op.create_table(
        'progress',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('user_id', UUID, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('module_id', UUID, sa.ForeignKey('modules.id', ondelete='CASCADE')),
        sa.Column('lesson_id', UUID, sa.ForeignKey('lessons.id', ondelete='CASCADE')),
        sa.Column('completed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('completion_percentage', sa.Float, nullable=False, server_default='0'),
        sa.Column('time_spent', sa.Integer, nullable=False, server_default='0'),
        sa.Column('current_step', sa.Integer, default=0),
        sa.Column('total_steps', sa.Integer, default=1),
        sa.Column('last_access', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_progress_user_lesson', 'progress', ['user_id', 'lesson_id'], unique=True)

    # === Overrides & audit ===

    op.create_table(
        'content_overrides',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('student_id', UUID, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', UUID, nullable=False),
        sa.Column('override_data', sa.JSON, nullable=False),
        sa.Column('created_by', UUID, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index(
        'ix_content_overrides_student_entity', 'content_overrides',
        ['student_id', 'entity_type', 'entity_id'], unique=True,
    )

    op.create_table(
        'change_logs',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('entity_type', sa.String(30), nullable=False),
        sa.Column('entity_id', UUID, nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('changed_by', UUID, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('changed_at', sa.DateTime, nullable=False, default=sa.func.now()),
        sa.Column('diff', sa.JSON),
    )
    op.create_index('ix_change_logs_entity', 'change_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_change_logs_changed_by', 'change_logs', ['changed_by'])
    op.create_index('ix_change_logs_changed_at', 'change_logs', ['changed_at'])


def downgrade() -> None:
    op.drop_table('change_logs')
    op.drop_table('content_overrides')
    op.drop_table('progress')
    op.drop_table('lesson_completions')
    op.drop_table('user_progress')
    op.drop_table('steps')
    op.drop_table('lessons')
    op.drop_table('module_prerequisites')
    op.drop_table('modules')
    op.drop_table('level_prerequisites')
    op.drop_table('levels')
    op.drop_table('teacher_students')
    op.drop_table('users')
