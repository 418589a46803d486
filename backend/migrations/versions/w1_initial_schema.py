"""create requester, scan, scan_finding, scan_report and usage_stats tables

Revision ID: w1_initial_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = 'w1_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── requester ──
    op.create_table(
        'requester',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('plan', sa.String(30), nullable=False, server_default='free'),
        sa.Column('scan_limit', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_requester_email', 'requester', ['email'], unique=True)

    # ── scan ──
    op.create_table(
        'scan',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('domain', sa.String(255), nullable=False),
        sa.Column('requester_id', sa.String(64), sa.ForeignKey('requester.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_public_scan', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('job_ref', sa.String(64), nullable=True),
        sa.Column('critical_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('high_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('medium_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('low_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('info_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_vulnerabilities', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('scan_config', sa.JSON(), nullable=True),
    )
    op.create_index('ix_scan_domain', 'scan', ['domain'])
    op.create_index('ix_scan_status', 'scan', ['status'])
    op.create_index('ix_scan_requester_created', 'scan', ['requester_id', 'created_at'])

    # ── scan_finding ──
    op.create_table(
        'scan_finding',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('scan_id', sa.String(36), sa.ForeignKey('scan.id', ondelete='CASCADE'), nullable=False),
        sa.Column('probe_name', sa.String(100), nullable=False),
        sa.Column('owasp_category', sa.String(3), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('impact', sa.Text(), nullable=True),
        sa.Column('recommendation', sa.Text(), nullable=True),
        sa.Column('references', sa.JSON(), nullable=True),
        sa.Column('evidence', sa.JSON(), nullable=True),
        sa.Column('confidence', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_scan_finding_scan_id', 'scan_finding', ['scan_id'])
    op.create_index('ix_scan_finding_owasp_category', 'scan_finding', ['owasp_category'])

    # ── scan_report ──
    op.create_table(
        'scan_report',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('scan_id', sa.String(36), sa.ForeignKey('scan.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('risk_score', sa.String(20), nullable=False),
        sa.Column('owasp_coverage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('recommendations', sa.JSON(), nullable=False),
        sa.Column('summary', sa.JSON(), nullable=True),
        sa.Column('generated_at', sa.DateTime(), nullable=False),
    )

    # ── usage_stats ──
    op.create_table(
        'usage_stats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('requester_id', sa.String(64), sa.ForeignKey('requester.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('scans_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('requester_id', 'date', name='uq_usage_stats_requester_date'),
    )
    op.create_index('ix_usage_stats_requester_id', 'usage_stats', ['requester_id'])


def downgrade():
    op.drop_index('ix_usage_stats_requester_id', table_name='usage_stats')
    op.drop_table('usage_stats')
    op.drop_table('scan_report')
    op.drop_index('ix_scan_finding_owasp_category', table_name='scan_finding')
    op.drop_index('ix_scan_finding_scan_id', table_name='scan_finding')
    op.drop_table('scan_finding')
    op.drop_index('ix_scan_requester_created', table_name='scan')
    op.drop_index('ix_scan_status', table_name='scan')
    op.drop_index('ix_scan_domain', table_name='scan')
    op.drop_table('scan')
    op.drop_index('ix_requester_email', table_name='requester')
    op.drop_table('requester')
