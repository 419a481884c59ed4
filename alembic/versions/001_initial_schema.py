"""Initial schema: organizations, projects, slot graph, sessions and events

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    """Create initial schema."""

    # Enable pgcrypto extension for gen_random_uuid()
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')

    op.create_table(
        'organizations',
        _id(),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('widget_key_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        *_timestamps(),
        sa.CheckConstraint("status IN ('active', 'suspended')", name='ck_organization_status'),
    )

    op.create_table(
        'projects',
        _id(),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('allowed_origins', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_projects_organization_id', 'projects', ['organization_id'])

    op.create_table(
        'videos',
        _id(),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('storage_path', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='processing'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.CheckConstraint("status IN ('processing', 'ready', 'error')", name='ck_video_status'),
    )
    op.create_index('ix_videos_project_id', 'videos', ['project_id'])

    op.create_table(
        'slots',
        _id(),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('video_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_entry_point', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('detail_button_text', sa.Text(), nullable=True),
        sa.Column('detail_button_url', sa.Text(), nullable=True),
        sa.Column('cta_button_text', sa.Text(), nullable=True),
        sa.Column('cta_button_url', sa.Text(), nullable=True),
        sa.Column('position_x', sa.Float(), nullable=True),
        sa.Column('position_y', sa.Float(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['video_id'], ['videos.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_slots_project_id', 'slots', ['project_id'])

    op.create_table(
        'slot_transitions',
        _id(),
        sa.Column('from_slot_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('to_slot_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('trigger_type', sa.String(10), nullable=False, server_default='auto'),
        sa.Column('trigger_config', sa.JSON(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['from_slot_id'], ['slots.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['to_slot_id'], ['slots.id'], ondelete='CASCADE'),
        sa.CheckConstraint("trigger_type IN ('auto', 'time', 'click')", name='ck_transition_trigger_type'),
    )
    op.create_index('ix_slot_transitions_from_slot_id', 'slot_transitions', ['from_slot_id'])

    op.create_table(
        'conversion_rules',
        _id(),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('condition', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_conversion_rules_project_id', 'conversion_rules', ['project_id'])

    op.create_table(
        'widget_sessions',
        _id(),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('visitor_id', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('last_active_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('converted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('device_type', sa.String(50), nullable=True),
        sa.Column('browser', sa.String(100), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_widget_sessions_project_id', 'widget_sessions', ['project_id'])
    op.create_index('ix_widget_sessions_started_at', 'widget_sessions', ['started_at'])

    op.create_table(
        'widget_events',
        _id(),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('slot_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('video_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('played_ms', sa.Integer(), nullable=True),
        sa.Column('button_label', sa.Text(), nullable=True),
        sa.Column('button_type', sa.String(30), nullable=True),
        sa.Column('destination_url', sa.Text(), nullable=True),
        sa.Column('page_url', sa.Text(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['session_id'], ['widget_sessions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['slot_id'], ['slots.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['video_id'], ['videos.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_widget_events_session_id', 'widget_events', ['session_id'])
    op.create_index('ix_widget_events_project_id', 'widget_events', ['project_id'])
    op.create_index('ix_widget_events_event_type', 'widget_events', ['event_type'])

    op.create_table(
        'event_slot_views',
        _id(),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('slot_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('video_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('watch_duration_ms', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['session_id'], ['widget_sessions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['slot_id'], ['slots.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['video_id'], ['videos.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_event_slot_views_session_id', 'event_slot_views', ['session_id'])

    op.create_table(
        'event_conversions',
        _id(),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('rule_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('slot_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('video_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('source_event_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('converted_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['session_id'], ['widget_sessions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rule_id'], ['conversion_rules.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['slot_id'], ['slots.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['video_id'], ['videos.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['source_event_id'], ['widget_events.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_event_conversions_session_id', 'event_conversions', ['session_id'])
    op.create_index('ix_event_conversions_rule_id', 'event_conversions', ['rule_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('event_conversions')
    op.drop_table('event_slot_views')
    op.drop_table('widget_events')
    op.drop_table('widget_sessions')
    op.drop_table('conversion_rules')
    op.drop_table('slot_transitions')
    op.drop_table('slots')
    op.drop_table('videos')
    op.drop_table('projects')
    op.drop_table('organizations')
