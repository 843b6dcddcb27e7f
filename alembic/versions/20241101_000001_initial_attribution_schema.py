"""Initial attribution schema.

Revision ID: 20241101_000001
Revises:
Create Date: 2024-11-01 12:00:00.000000

WHAT:
    Creates the CourseSignal tables:
    - workspaces: tenants and their public site keys
    - visitor_identities: anonymous visitors, captured email, first-touch snapshot
    - touches: append-only log of inbound visits with UTM metadata
    - launches: promotional windows with goals and public sharing
    - purchases: ingested purchases with frozen first/last touch attribution
    - launch_views: visits to public launch recaps

WHY:
    Attribution is computed once at ingestion and frozen on the purchase row,
    so reports read purchases directly without replaying touches.

REFERENCES:
    - coursesignal/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20241101_000001'
down_revision = None
branch_labels = None
depends_on = None


attribution_status_enum = postgresql.ENUM(
    'matched', 'unmatched', name='attribution_status_enum', create_type=False
)
match_method_enum = postgresql.ENUM(
    'email', 'fingerprint', 'none', name='match_method_enum', create_type=False
)
launch_status_enum = postgresql.ENUM(
    'upcoming', 'active', 'completed', 'archived', name='launch_status_enum', create_type=False
)


def upgrade() -> None:
    bind = op.get_bind()
    attribution_status_enum.create(bind, checkfirst=True)
    match_method_enum.create(bind, checkfirst=True)
    launch_status_enum.create(bind, checkfirst=True)

    # =========================================================================
    # STEP 1: workspaces
    # =========================================================================
    op.create_table(
        'workspaces',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('site_key', sa.String(64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_workspaces_site_key', 'workspaces', ['site_key'], unique=True)

    # =========================================================================
    # STEP 2: visitor_identities
    # =========================================================================
    # WHAT: One row per (workspace, visitor_key)
    # WHY: first_touch_* is written once, on the first ping, never recomputed
    op.create_table(
        'visitor_identities',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visitor_key', sa.String(255), nullable=False),
        sa.Column('email', sa.String(320), nullable=True),
        sa.Column('device_fingerprint', sa.String(255), nullable=False),

        sa.Column('first_touch_source', sa.String(255), nullable=True),
        sa.Column('first_touch_medium', sa.String(255), nullable=True),
        sa.Column('first_touch_campaign', sa.String(255), nullable=True),
        sa.Column('first_touch_referrer', sa.Text(), nullable=True),
        sa.Column('first_touch_landing_page', sa.Text(), nullable=True),
        sa.Column('first_touch_at', sa.DateTime(), nullable=True),

        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('workspace_id', 'visitor_key', name='uq_visitor_identity_key'),
    )
    op.create_index('ix_visitor_identities_workspace_email', 'visitor_identities',
                    ['workspace_id', 'email'])
    op.create_index('ix_visitor_identities_workspace_fingerprint', 'visitor_identities',
                    ['workspace_id', 'device_fingerprint'])

    # =========================================================================
    # STEP 3: touches (append-only)
    # =========================================================================
    op.create_table(
        'touches',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visitor_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('visitor_identities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source', sa.String(255), nullable=True),
        sa.Column('medium', sa.String(255), nullable=True),
        sa.Column('campaign', sa.String(255), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('landing_page', sa.Text(), nullable=True),
        sa.Column('touched_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_touches_visitor_touched_at', 'touches', ['visitor_id', 'touched_at'])
    op.create_index('ix_touches_workspace_touched_at', 'touches', ['workspace_id', 'touched_at'])

    # =========================================================================
    # STEP 4: launches
    # =========================================================================
    # WHAT: Promotional windows; status is derived from dates except archived
    # WHY: Purchases inside [start_date, end_date] are reported per launch
    op.create_table(
        'launches',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('revenue_goal', sa.Numeric(12, 2), nullable=True),
        sa.Column('sales_goal', sa.Integer(), nullable=True),
        sa.Column('status', launch_status_enum, nullable=False, server_default='upcoming'),

        # Public sharing
        sa.Column('share_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('share_token', sa.String(64), nullable=True, unique=True),
        sa.Column('share_password_hash', sa.String(255), nullable=True),
        sa.Column('share_expires_at', sa.DateTime(), nullable=True),

        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('end_date > start_date', name='ck_launch_dates'),
    )
    op.create_index('ix_launches_workspace_dates', 'launches',
                    ['workspace_id', 'start_date', 'end_date'])

    # =========================================================================
    # STEP 5: purchases
    # =========================================================================
    # WHAT: One row per (workspace, platform, platform_purchase_id)
    # WHY: Unique key makes webhook re-delivery idempotent
    op.create_table(
        'purchases',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visitor_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('visitor_identities.id', ondelete='SET NULL'), nullable=True),
        sa.Column('launch_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('launches.id', ondelete='SET NULL'), nullable=True),

        sa.Column('platform', sa.String(64), nullable=False),
        sa.Column('platform_purchase_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('product_name', sa.String(255), nullable=True),

        sa.Column('first_touch_source', sa.String(255), nullable=True),
        sa.Column('first_touch_medium', sa.String(255), nullable=True),
        sa.Column('first_touch_campaign', sa.String(255), nullable=True),
        sa.Column('last_touch_source', sa.String(255), nullable=True),
        sa.Column('last_touch_medium', sa.String(255), nullable=True),
        sa.Column('last_touch_campaign', sa.String(255), nullable=True),

        sa.Column('attribution_status', attribution_status_enum, nullable=False,
                  server_default='unmatched'),
        sa.Column('match_method', match_method_enum, nullable=False, server_default='none'),

        sa.Column('purchased_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('workspace_id', 'platform', 'platform_purchase_id',
                            name='uq_purchase_platform_id'),
    )
    op.create_index('ix_purchases_workspace_purchased_at', 'purchases',
                    ['workspace_id', 'purchased_at'])

    # =========================================================================
    # STEP 6: launch_views
    # =========================================================================
    op.create_table(
        'launch_views',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('launch_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('launches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('share_token', sa.String(64), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('viewed_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_launch_views_launch_id', 'launch_views', ['launch_id'])


def downgrade() -> None:
    op.drop_table('launch_views')
    op.drop_table('purchases')
    op.drop_table('launches')
    op.drop_table('touches')
    op.drop_table('visitor_identities')
    op.drop_index('ix_workspaces_site_key', table_name='workspaces')
    op.drop_table('workspaces')

    bind = op.get_bind()
    launch_status_enum.drop(bind, checkfirst=True)
    match_method_enum.drop(bind, checkfirst=True)
    attribution_status_enum.drop(bind, checkfirst=True)
