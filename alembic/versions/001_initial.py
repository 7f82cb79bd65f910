"""Initial migration - create all tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('username', sa.String(100), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('avatar_url', sa.Text(), nullable=True),
        sa.Column('spotify_id', sa.String(64), nullable=True, unique=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.Integer(), nullable=True),
        sa.Column('last_active_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    # Create tracks table
    op.create_table(
        'tracks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('spotify_id', sa.String(64), nullable=False, unique=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('artist', sa.Text(), nullable=True),
        sa.Column('album', sa.Text(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='spotify'),
        sa.Column('source_url', sa.Text(), nullable=True),
    )

    # Create artists table
    op.create_table(
        'artists',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('spotify_id', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('genres', sa.JSON(), nullable=False),
        sa.Column('popularity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('followers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('source_url', sa.Text(), nullable=True),
    )

    # Create ranked list tables
    op.create_table(
        'top_tracks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('track_id', sa.Integer(), sa.ForeignKey('tracks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('time_range', sa.String(20), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('collected_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_top_tracks_user_id', 'top_tracks', ['user_id'])

    op.create_table(
        'top_artists',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('artist_id', sa.Integer(), sa.ForeignKey('artists.id', ondelete='CASCADE'), nullable=False),
        sa.Column('time_range', sa.String(20), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('collected_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_top_artists_user_id', 'top_artists', ['user_id'])

    # Create recent_playback table
    op.create_table(
        'recent_playback',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('track_id', sa.Integer(), sa.ForeignKey('tracks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('played_at', sa.DateTime(), nullable=False),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            'user_id', 'track_id', 'played_at',
            name='uq_recent_playback_user_track_played_at'
        ),
    )
    op.create_index('ix_recent_playback_user_id', 'recent_playback', ['user_id'])

    # Create feed_events table
    op.create_table(
        'feed_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('track_id', sa.Integer(), sa.ForeignKey('tracks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_feed_events_user_id', 'feed_events', ['user_id'])

    # Create listening_stats table
    op.create_table(
        'listening_stats',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('total_tracks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_artists', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('top_genres', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'date', name='uq_listening_stats_user_date'),
    )
    op.create_index('ix_listening_stats_user_id', 'listening_stats', ['user_id'])


def downgrade() -> None:
    op.drop_table('listening_stats')
    op.drop_table('feed_events')
    op.drop_table('recent_playback')
    op.drop_table('top_artists')
    op.drop_table('top_tracks')
    op.drop_table('artists')
    op.drop_table('tracks')
    op.drop_table('users')
