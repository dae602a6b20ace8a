"""create escrow tables

Revision ID: create_escrow_tables
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_escrow_tables'
down_revision = None
branch_labels = None
depends_on = None


user_type = sa.Enum('brand', 'creator', 'admin', name='usertype')
deal_state = sa.Enum('DRAFT', 'FUNDED', 'RELEASED', 'DISPUTED', 'REFUNDED', name='dealstate')
milestone_state = sa.Enum('PENDING', 'SUBMITTED', 'APPROVED', 'RELEASED', 'DISPUTED', name='milestonestate')
approval_source = sa.Enum('review', 'auto_release', 'force_release', 'dispute_resolution', name='approvalsource')
review_outcome = sa.Enum('approved', 'rejected', 'revision_requested', name='reviewoutcome')
payout_status = sa.Enum('PROCESSING', 'PAID', 'FAILED', 'REVERSED', name='payoutstatus')


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('user_type', user_type),
        sa.Column('payment_authorization_code', sa.String(100)),
        sa.Column('payment_recipient_code', sa.String(100)),
        sa.Column('payouts_enabled', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_payment_recipient_code', 'users', ['payment_recipient_code'])

    op.create_table(
        'deals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('brand_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('users.id')),
        sa.Column('proposed_creator_id', sa.String(36), sa.ForeignKey('users.id')),
        sa.Column('title', sa.String(255)),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('state', deal_state, nullable=False),
        sa.Column('escrow_ref', sa.String(255), unique=True),
        sa.Column('funding_ref', sa.String(255)),
        sa.Column('refund_ref', sa.String(255)),
        sa.Column('refund_started_at', sa.DateTime()),
        sa.Column('auto_release_enabled', sa.Boolean(), nullable=False),
        sa.Column('auto_release_days', sa.Integer(), nullable=False),
        sa.Column('accepted_at', sa.DateTime()),
        sa.Column('funded_at', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('refunded_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_deals_brand_id', 'deals', ['brand_id'])
    op.create_index('ix_deals_creator_id', 'deals', ['creator_id'])
    op.create_index('ix_deals_state', 'deals', ['state'])
    op.create_index('ix_deals_funding_ref', 'deals', ['funding_ref'])

    op.create_table(
        'milestones',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('due_at', sa.DateTime()),
        sa.Column('state', milestone_state, nullable=False),
        sa.Column('approved_via', approval_source),
        sa.Column('payout_ref', sa.String(255)),
        sa.Column('release_lease_until', sa.DateTime()),
        sa.Column('last_release_error', sa.Text()),
        sa.Column('submitted_at', sa.DateTime()),
        sa.Column('approved_at', sa.DateTime()),
        sa.Column('released_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_milestones_deal_id', 'milestones', ['deal_id'])
    op.create_index('ix_milestones_state', 'milestones', ['state'])

    op.create_table(
        'deliverables',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('milestone_id', sa.String(36), sa.ForeignKey('milestones.id', ondelete='CASCADE'), nullable=False),
        sa.Column('submitted_by', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('revision', sa.Integer(), nullable=False),
        sa.Column('content_url', sa.String(500)),
        sa.Column('content_hash', sa.String(128)),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('submission_type', sa.String(10), nullable=False),
        sa.Column('submission_metadata', sa.JSON()),
        sa.Column('review_outcome', review_outcome),
        sa.Column('feedback', sa.Text()),
        sa.Column('reviewed_by', sa.String(36), sa.ForeignKey('users.id')),
        sa.Column('reviewed_at', sa.DateTime()),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_deliverables_milestone_id', 'deliverables', ['milestone_id'])

    op.create_table(
        'scheduled_release_jobs',
        sa.Column('milestone_id', sa.String(36), sa.ForeignKey('milestones.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('fire_at', sa.DateTime(), nullable=False),
        sa.Column('payload', sa.JSON()),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False),
        sa.Column('locked_until', sa.DateTime()),
        sa.Column('last_error', sa.Text()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_scheduled_release_jobs_deal_id', 'scheduled_release_jobs', ['deal_id'])
    op.create_index('ix_scheduled_release_jobs_fire_at', 'scheduled_release_jobs', ['fire_at'])
    op.create_index('ix_scheduled_release_jobs_next_attempt_at', 'scheduled_release_jobs', ['next_attempt_at'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=False),
        sa.Column('milestone_id', sa.String(36), sa.ForeignKey('milestones.id'), nullable=False, unique=True),
        sa.Column('provider_ref', sa.String(255), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', payout_status, nullable=False),
        sa.Column('failure_reason', sa.Text()),
        sa.Column('paid_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_payouts_deal_id', 'payouts', ['deal_id'])
    op.create_index('ix_payouts_provider_ref', 'payouts', ['provider_ref'])

    op.create_table(
        'external_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_external_events_provider_event'),
    )

    op.create_table(
        'event_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('actor_id', sa.String(36)),
        sa.Column('deal_id', sa.String(36)),
        sa.Column('milestone_id', sa.String(36)),
        sa.Column('payload', sa.JSON()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_event_log_type', 'event_log', ['type'])
    op.create_index('ix_event_log_deal_id', 'event_log', ['deal_id'])
    op.create_index('ix_event_log_milestone_id', 'event_log', ['milestone_id'])
    op.create_index('ix_event_log_deal_created', 'event_log', ['deal_id', 'id'])


def downgrade():
    op.drop_table('event_log')
    op.drop_table('external_events')
    op.drop_table('payouts')
    op.drop_table('scheduled_release_jobs')
    op.drop_table('deliverables')
    op.drop_table('milestones')
    op.drop_table('deals')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (payout_status, review_outcome, approval_source, milestone_state, deal_state, user_type):
        enum_type.drop(bind, checkfirst=True)
