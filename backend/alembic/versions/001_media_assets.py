"""Media asset model migration.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'media_assets',
        sa.Column('id', sa.Uuid(), nullable=False),
        # Source file
        sa.Column('source_path', sa.String(1024), nullable=False),
        sa.Column('checksum', sa.String(64), nullable=True),
        sa.Column('mime_type', sa.String(100), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        # Probed source metadata
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('source_width', sa.Integer(), nullable=True),
        sa.Column('source_height', sa.Integer(), nullable=True),
        sa.Column('source_bitrate', sa.Integer(), nullable=True),
        # Processing state
        sa.Column(
            'processing_status',
            sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', name='processing_status'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processing_completed_at', sa.DateTime(), nullable=True),
        sa.Column('progress', sa.Float(), nullable=False, server_default='0'),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claimed_by', sa.String(length=255), nullable=True),
        # Outputs
        sa.Column('output_dir', sa.String(1024), nullable=True),
        sa.Column('processed_versions', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('thumbnail_paths', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('preview_path', sa.String(1024), nullable=True),
        sa.Column('manifest_path', sa.String(1024), nullable=True),
        # Timestamps
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_index('ix_media_assets_checksum', 'media_assets', ['checksum'])
    op.create_index('ix_media_assets_processing_status', 'media_assets', ['processing_status'])
    op.create_index(
        'ix_media_assets_processing_completed_at', 'media_assets', ['processing_completed_at']
    )
    # Retention sweep scans COMPLETED assets by completion time
    op.create_index(
        'ix_media_assets_status_completed_at',
        'media_assets',
        ['processing_status', 'processing_completed_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_media_assets_status_completed_at', table_name='media_assets')
    op.drop_index('ix_media_assets_processing_completed_at', table_name='media_assets')
    op.drop_index('ix_media_assets_processing_status', table_name='media_assets')
    op.drop_index('ix_media_assets_checksum', table_name='media_assets')
    op.drop_table('media_assets')
    sa.Enum(name='processing_status').drop(op.get_bind(), checkfirst=True)
