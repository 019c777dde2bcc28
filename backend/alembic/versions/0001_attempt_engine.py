"""attempt engine tables

Revision ID: 0001_attempt_engine
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = '0001_attempt_engine'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        'assessments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False, server_default='exam'),
        sa.Column('course_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sections', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('passing_marks', sa.Float(), nullable=True),
        sa.Column('passing_percentage', sa.Float(), nullable=True),
        sa.Column('max_attempts', sa.Integer(), nullable=True),
        sa.Column('negative_marking', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint("kind in ('exam', 'quiz')", name='assessment_kind_values'),
    )
    op.create_index('ix_assessments_kind', 'assessments', ['kind'])
    op.create_index('ix_assessments_course_id', 'assessments', ['course_id'])

    op.create_table(
        'enrollments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('course_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('is_enrolled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('course_id', 'user_id', name='uq_enrollments_course_user'),
    )
    op.create_index('ix_enrollments_user_id', 'enrollments', ['user_id'])

    op.create_table(
        'attempts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('assessment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('learner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='in_progress'),
        sa.Column('finalize_reason', sa.String(length=30), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('time_remaining', sa.Integer(), nullable=False),
        sa.Column('sections', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('total_marks', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_marks_awarded', sa.Float(), nullable=False, server_default='0'),
        sa.Column('percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_passed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_graded', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['assessment_id'], ['assessments.id'], ondelete='CASCADE'),
        sa.UniqueConstraint(
            'assessment_id', 'learner_id', 'attempt_number', name='uq_attempts_assessment_learner_number'
        ),
        sa.CheckConstraint(
            "status in ('in_progress', 'finalized', 'graded')",
            name='attempt_status_values',
        ),
        sa.CheckConstraint(
            "finalize_reason is null or finalize_reason in ('submitted', 'timed_out')",
            name='attempt_finalize_reason_values',
        ),
    )
    op.create_index('ix_attempts_learner_id', 'attempts', ['learner_id'])
    op.create_index('ix_attempts_assessment_id', 'attempts', ['assessment_id'])
    # At most one in-progress attempt per learner and assessment.
    op.create_index(
        'uq_attempts_one_in_progress',
        'attempts',
        ['assessment_id', 'learner_id'],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )

    op.create_table(
        'grades',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('attempt_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('assessment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('learner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('sections', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('total_marks_awarded', sa.Float(), nullable=False, server_default='0'),
        sa.Column('max_marks', sa.Float(), nullable=False, server_default='0'),
        sa.Column('percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=10), nullable=False),
        sa.Column('graded_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('graded_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['attempt_id'], ['attempts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['assessment_id'], ['assessments.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('attempt_id', name='uq_grades_attempt'),
        sa.CheckConstraint("status in ('pass', 'fail')", name='grade_status_values'),
        sa.CheckConstraint("kind in ('exam', 'quiz')", name='grade_kind_values'),
    )
    op.create_index('ix_grades_learner_id', 'grades', ['learner_id'])
    op.create_index('ix_grades_assessment_id', 'grades', ['assessment_id'])


def downgrade() -> None:
    op.drop_index('ix_grades_assessment_id', table_name='grades')
    op.drop_index('ix_grades_learner_id', table_name='grades')
    op.drop_table('grades')

    op.drop_index('uq_attempts_one_in_progress', table_name='attempts')
    op.drop_index('ix_attempts_assessment_id', table_name='attempts')
    op.drop_index('ix_attempts_learner_id', table_name='attempts')
    op.drop_table('attempts')

    op.drop_index('ix_enrollments_user_id', table_name='enrollments')
    op.drop_table('enrollments')

    op.drop_index('ix_assessments_course_id', table_name='assessments')
    op.drop_index('ix_assessments_kind', table_name='assessments')
    op.drop_table('assessments')
