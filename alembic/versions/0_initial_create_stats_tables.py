"""Initial migration - roster mirror, stats aggregates and audit trails

Revision ID: 0_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── classes / schedules (owned by the roster CRUD layer) ──────────
    op.create_table(
        'classes',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False, server_default=''),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'schedules',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('class_id', sa.String(64), sa.ForeignKey('classes.id'), nullable=False),
        sa.Column('quiz_id', sa.String(64), nullable=False),
        sa.Column('quiz_root_id', sa.String(64), nullable=False),
        sa.Column('quiz_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('quiz_name', sa.String(255), nullable=True),
        sa.Column('subject', sa.String(100), nullable=True),
        sa.Column('subject_color', sa.String(16), nullable=True),
        sa.Column('topic', sa.String(200), nullable=True),
        sa.Column('contribution', sa.Float(), nullable=False, server_default='100'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_schedules_class_id', 'schedules', ['class_id'])
    op.create_index('ix_schedules_quiz_root_id', 'schedules', ['quiz_root_id'])

    # ── student_class_stats + keyed children ──────────────────────────
    op.create_table(
        'student_class_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('class_id', sa.String(64), nullable=False),
        sa.Column('student_id', sa.String(64), nullable=False),
        sa.Column('sum_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('sum_max', sa.Float(), nullable=False, server_default='0'),
        sa.Column('participation_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overall_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('streak_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('best_streak_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_streak_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('class_id', 'student_id', name='uq_class_student_stats'),
    )
    op.create_index('ix_student_class_stats_class_id', 'student_class_stats', ['class_id'])
    op.create_index('ix_student_class_stats_student_id', 'student_class_stats', ['student_id'])
    op.create_index(
        'ix_leaderboard', 'student_class_stats', ['class_id', 'overall_score', 'streak_days']
    )

    op.create_table(
        'canonical_attempts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column(
            'stat_id',
            sa.UUID(),
            sa.ForeignKey('student_class_stats.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('schedule_id', sa.String(64), nullable=False),
        sa.Column('attempt_id', sa.String(64), nullable=False),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('max_score', sa.Float(), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('subject', sa.String(100), nullable=True),
        sa.Column('topic', sa.String(200), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stat_id', 'schedule_id', name='uq_canonical_stat_schedule'),
    )
    op.create_index('ix_canonical_attempts_schedule_id', 'canonical_attempts', ['schedule_id'])

    op.create_table(
        'attendance_days',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column(
            'stat_id',
            sa.UUID(),
            sa.ForeignKey('student_class_stats.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('day_key', sa.String(10), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stat_id', 'day_key', name='uq_attendance_stat_day'),
    )

    op.create_table(
        'stat_buckets',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column(
            'stat_id',
            sa.UUID(),
            sa.ForeignKey('student_class_stats.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('dimension', sa.String(16), nullable=False),
        sa.Column('label', sa.String(200), nullable=False),
        sa.Column('sum_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('sum_max', sa.Float(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'stat_id', 'dimension', 'label', name='uq_bucket_stat_dimension_label'
        ),
    )

    # ── schedule_stats ────────────────────────────────────────────────
    op.create_table(
        'schedule_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('schedule_id', sa.String(64), nullable=False),
        sa.Column('class_id', sa.String(64), nullable=False),
        sa.Column('quiz_id', sa.String(64), nullable=False),
        sa.Column('participants', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sum_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('sum_max', sa.Float(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_schedule_stats_schedule_id', 'schedule_stats', ['schedule_id'], unique=True)
    op.create_index('ix_schedule_stats_class_id', 'schedule_stats', ['class_id'])
    op.create_index('ix_schedule_stats_quiz_id', 'schedule_stats', ['quiz_id'])

    # ── audit trails ──────────────────────────────────────────────────
    op.create_table(
        'attempt_audit',
        sa.Column('attempt_id', sa.String(64), nullable=False),
        sa.Column('attempt_version', sa.Integer(), nullable=False),
        sa.Column('quiz_id', sa.String(64), nullable=False),
        sa.Column('quiz_root_id', sa.String(64), nullable=True),
        sa.Column('quiz_version', sa.Integer(), nullable=True),
        sa.Column('class_id', sa.String(64), nullable=True),
        sa.Column('schedule_id', sa.String(64), nullable=False),
        sa.Column('student_id', sa.String(64), nullable=False),
        sa.Column('subject', sa.String(100), nullable=True),
        sa.Column('topic', sa.String(200), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('max_score', sa.Float(), nullable=True),
        sa.Column('valid', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('attempt_id'),
    )
    op.create_index('ix_attempt_audit_quiz_id', 'attempt_audit', ['quiz_id'])
    op.create_index('ix_attempt_audit_quiz_root_id', 'attempt_audit', ['quiz_root_id'])
    op.create_index(
        'ix_audit_student_schedule',
        'attempt_audit',
        ['class_id', 'student_id', 'schedule_id', 'valid'],
    )

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(64), nullable=False),
        sa.Column('type', sa.String(40), nullable=False),
        sa.Column('attempt_id', sa.String(64), nullable=True),
        sa.Column('attempt_version', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('event_id'),
    )


def downgrade() -> None:
    # Drop all tables in reverse order
    op.drop_table('processed_events')
    op.drop_table('attempt_audit')
    op.drop_table('schedule_stats')
    op.drop_table('stat_buckets')
    op.drop_table('attendance_days')
    op.drop_table('canonical_attempts')
    op.drop_table('student_class_stats')
    op.drop_table('schedules')
    op.drop_table('classes')
