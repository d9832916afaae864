"""Create tracking tables (stores, tracking_configs, tracking_events, entity_name_snapshots).

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 12:00:00.000000

WHAT:
    - stores: commerce stores with encrypted webhook secret / access token
    - tracking_configs: pixel id and server-side forwarding switch per store
    - tracking_events: browser, server and order events; (store_id, event_id)
      is the dedup key the upsert relies on
    - entity_name_snapshots: campaign / ad set / ad names for UTM lookup

REFERENCES:
    - signalmatch/models.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'stores',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('domain', sa.String(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False, server_default='shopify'),
        sa.Column('api_key', sa.String(), nullable=True),
        sa.Column('api_secret_encrypted', sa.Text(), nullable=True),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_stores_domain', 'stores', ['domain'], unique=True)

    op.create_table(
        'tracking_configs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.String(), sa.ForeignKey('stores.id'), nullable=False, unique=True),
        sa.Column('pixel_id', sa.String(), nullable=True, unique=True),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('server_side_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('capi_access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('attribution_model', sa.String(), nullable=False, server_default='last_click'),
        sa.Column('attribution_window', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'tracking_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('store_id', sa.String(), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('event_name', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False, server_default='browser'),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('page_url', sa.Text(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('click_id', sa.String(), nullable=True),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('email_hash', sa.String(), nullable=True),
        sa.Column('phone_hash', sa.String(), nullable=True),
        sa.Column('ip_hash', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('value', sa.Float(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('payload_json', sa.JSON(), nullable=True),
        sa.Column('meta_forwarded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('meta_last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('meta_last_error', sa.Text(), nullable=True),
        sa.UniqueConstraint('store_id', 'event_id', name='uq_tracking_events_store_event'),
    )
    op.create_index('ix_tracking_events_store_occurred', 'tracking_events', ['store_id', 'occurred_at'])
    op.create_index(
        'ix_tracking_events_store_name_occurred',
        'tracking_events',
        ['store_id', 'event_name', 'occurred_at'],
    )
    op.create_index(
        'ix_tracking_events_store_entities',
        'tracking_events',
        ['store_id', 'campaign_id', 'adset_id', 'ad_id', 'occurred_at'],
    )
    # Signal lookups (scorer, remapper)
    op.create_index('ix_tracking_events_store_click', 'tracking_events', ['store_id', 'click_id'])
    op.create_index('ix_tracking_events_store_fbc', 'tracking_events', ['store_id', 'fbc'])
    op.create_index('ix_tracking_events_store_fbp', 'tracking_events', ['store_id', 'fbp'])
    op.create_index('ix_tracking_events_store_email', 'tracking_events', ['store_id', 'email_hash'])

    op.create_table(
        'entity_name_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.String(), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('level', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('captured_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('store_id', 'level', 'entity_id', name='uq_entity_name_snapshot'),
    )
    op.create_index('ix_entity_name_snapshots_store_id', 'entity_name_snapshots', ['store_id'])


def downgrade() -> None:
    op.drop_index('ix_entity_name_snapshots_store_id', table_name='entity_name_snapshots')
    op.drop_table('entity_name_snapshots')

    for name in (
        'ix_tracking_events_store_email',
        'ix_tracking_events_store_fbp',
        'ix_tracking_events_store_fbc',
        'ix_tracking_events_store_click',
        'ix_tracking_events_store_entities',
        'ix_tracking_events_store_name_occurred',
        'ix_tracking_events_store_occurred',
    ):
        op.drop_index(name, table_name='tracking_events')
    op.drop_table('tracking_events')

    op.drop_table('tracking_configs')
    op.drop_index('ix_stores_domain', table_name='stores')
    op.drop_table('stores')
