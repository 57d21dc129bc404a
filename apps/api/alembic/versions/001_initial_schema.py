"""Initial schema: athletes, activities, splits, best efforts, races, PBs, VDOT history

Revision ID: 001
Revises:
Create Date: 2026-01-05

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'athlete',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('password_hash', sa.Text(), nullable=True),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('birthdate', sa.Date(), nullable=True),
        sa.Column('sex', sa.Text(), nullable=True),
        sa.Column('role', sa.Text(), server_default='athlete', nullable=False),
        sa.Column('max_hr', sa.Integer(), nullable=True),
        sa.Column('resting_hr', sa.Integer(), nullable=True),
        sa.Column('vdot', sa.Float(), nullable=True),
        sa.Column('threshold_pace_per_mile', sa.Float(), nullable=True),
        sa.Column('threshold_confidence', sa.Float(), nullable=True),
        sa.Column('strava_athlete_id', sa.BigInteger(), nullable=True),
        sa.Column('strava_access_token', sa.Text(), nullable=True),
        sa.Column('strava_refresh_token', sa.Text(), nullable=True),
        sa.Column('strava_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('strava_auto_sync', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('last_strava_sync', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('strava_athlete_id'),
    )

    op.create_table(
        'activity',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('local_date', sa.Date(), nullable=True),
        sa.Column('sport', sa.Text(), server_default='run', nullable=False),
        sa.Column('source', sa.Text(), server_default='manual', nullable=False),
        sa.Column('provider', sa.Text(), nullable=True),
        sa.Column('external_activity_id', sa.Text(), nullable=True),
        sa.Column('duration_s', sa.Integer(), nullable=True),
        sa.Column('distance_m', sa.Float(), nullable=True),
        sa.Column('avg_hr', sa.Integer(), nullable=True),
        sa.Column('max_hr', sa.Integer(), nullable=True),
        sa.Column('total_elevation_gain', sa.Float(), nullable=True),
        sa.Column('workout_type', sa.Text(), server_default='easy', nullable=False),
        sa.Column('strava_workout_type', sa.Integer(), nullable=True),
        sa.Column('temperature_f', sa.Float(), nullable=True),
        sa.Column('humidity_pct', sa.Float(), nullable=True),
        sa.Column('best_efforts_extracted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'external_activity_id', name='uq_activity_provider_external_id'),
    )
    op.create_index('ix_activity_athlete_start', 'activity', ['athlete_id', 'start_time'])

    op.create_table(
        'activity_split',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('activity_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('split_number', sa.Integer(), nullable=False),
        sa.Column('distance', sa.Float(), nullable=True),
        sa.Column('elapsed_time', sa.Integer(), nullable=True),
        sa.Column('moving_time', sa.Integer(), nullable=True),
        sa.Column('average_heartrate', sa.Integer(), nullable=True),
        sa.Column('max_heartrate', sa.Integer(), nullable=True),
        sa.Column('lap_type', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['activity_id'], ['activity.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('activity_id', 'split_number', name='uq_activity_split_number'),
    )
    op.create_index('ix_activity_split_activity_id', 'activity_split', ['activity_id'])

    op.create_table(
        'best_effort',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('activity_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('distance_category', sa.Text(), nullable=False),
        sa.Column('distance_meters', sa.Integer(), nullable=False),
        sa.Column('elapsed_time', sa.Integer(), nullable=False),
        sa.Column('achieved_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('strava_effort_id', sa.BigInteger(), nullable=True),
        sa.Column('pr_rank', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id']),
        sa.ForeignKeyConstraint(['activity_id'], ['activity.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('activity_id', 'strava_effort_id', name='uq_best_effort_activity_strava'),
    )
    op.create_index('ix_best_effort_athlete_id', 'best_effort', ['athlete_id'])
    op.create_index('ix_best_effort_activity_id', 'best_effort', ['activity_id'])
    op.create_index('ix_best_effort_distance_category', 'best_effort', ['distance_category'])

    op.create_table(
        'race_result',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('activity_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('race_name', sa.Text(), nullable=True),
        sa.Column('distance_label', sa.Text(), nullable=False),
        sa.Column('distance_meters', sa.Integer(), nullable=False),
        sa.Column('finish_time_seconds', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('calculated_vdot', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id']),
        sa.ForeignKeyConstraint(['activity_id'], ['activity.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_race_result_athlete_date', 'race_result', ['athlete_id', 'date'])

    op.create_table(
        'personal_best',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('distance_category', sa.Text(), nullable=False),
        sa.Column('distance_meters', sa.Integer(), nullable=False),
        sa.Column('time_seconds', sa.Integer(), nullable=False),
        sa.Column('pace_per_mile', sa.Float(), nullable=True),
        sa.Column('achieved_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('source', sa.Text(), nullable=False),
        sa.Column('activity_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('race_result_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id']),
        sa.ForeignKeyConstraint(['activity_id'], ['activity.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['race_result_id'], ['race_result.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('athlete_id', 'distance_category', name='uq_personal_best_athlete_distance'),
    )
    op.create_index('ix_personal_best_athlete_id', 'personal_best', ['athlete_id'])

    op.create_table(
        'vdot_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('athlete_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('vdot', sa.Float(), nullable=False),
        sa.Column('source', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Text(), server_default='medium', nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['athlete_id'], ['athlete.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('athlete_id', 'date', name='uq_vdot_history_athlete_month'),
    )


def downgrade() -> None:
    op.drop_table('vdot_history')
    op.drop_index('ix_personal_best_athlete_id', table_name='personal_best')
    op.drop_table('personal_best')
    op.drop_index('ix_race_result_athlete_date', table_name='race_result')
    op.drop_table('race_result')
    op.drop_index('ix_best_effort_distance_category', table_name='best_effort')
    op.drop_index('ix_best_effort_activity_id', table_name='best_effort')
    op.drop_index('ix_best_effort_athlete_id', table_name='best_effort')
    op.drop_table('best_effort')
    op.drop_index('ix_activity_split_activity_id', table_name='activity_split')
    op.drop_table('activity_split')
    op.drop_index('ix_activity_athlete_start', table_name='activity')
    op.drop_table('activity')
    op.drop_table('athlete')
