"""Create repository compliance tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-19 12:00:00.000000

Snapshots with their indexed files, analysis runs, findings with review
history, remediation tasks and the organization-scoped audit log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'repository_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('snapshot_id', sa.String(32), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('company_profile_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('uploaded_by', sa.String(100), nullable=False),
        sa.Column('uploaded_file_name', sa.String(255), nullable=False),
        sa.Column('uploaded_file_hash', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='uploading'),
        sa.Column('extracted_path', sa.String(1024), nullable=True),
        sa.Column('manifest_hash', sa.String(64), nullable=True),
        sa.Column('file_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('technologies', postgresql.JSONB(), nullable=True),
        sa.Column('analysis_phase', sa.String(64), nullable=True),
        sa.Column('error_message', sa.String(2000), nullable=True),
        sa.Column('analysis_started_at', sa.DateTime(), nullable=True),
        sa.Column('analysis_completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_repository_snapshots_snapshot_id', 'repository_snapshots', ['snapshot_id'], unique=True)
    op.create_index('ix_repository_snapshots_organization_id', 'repository_snapshots', ['organization_id'])
    op.create_index('ix_repository_snapshots_status', 'repository_snapshots', ['status'])
    op.create_index(
        'ix_repository_snapshots_org_manifest', 'repository_snapshots', ['organization_id', 'manifest_hash'],
    )

    op.create_table(
        'repository_files',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('snapshot_id', sa.Integer(),
                  sa.ForeignKey('repository_snapshots.id', ondelete='CASCADE'), nullable=False),
        sa.Column('relative_path', sa.String(4096), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_type', sa.String(32), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=True),
        sa.Column('language', sa.String(32), nullable=True),
        sa.Column('category', sa.String(16), nullable=False),
        sa.Column('is_security_relevant', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_oversized', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('indexed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_repository_files_snapshot_id', 'repository_files', ['snapshot_id'])
    op.create_index('ix_repository_files_category', 'repository_files', ['category'])

    op.create_table(
        'analysis_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_id', sa.String(32), nullable=False),
        sa.Column('snapshot_id', sa.Integer(),
                  sa.ForeignKey('repository_snapshots.id', ondelete='CASCADE'), nullable=False),
        sa.Column('frameworks', postgresql.JSONB(), nullable=True),
        sa.Column('depth', sa.String(20), nullable=False),
        sa.Column('phase', sa.String(64), nullable=True),
        sa.Column('phase_status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.String(2000), nullable=True),
        sa.Column('metrics', postgresql.JSONB(), nullable=True),
        sa.Column('requested_by', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_analysis_runs_run_id', 'analysis_runs', ['run_id'], unique=True)
    op.create_index('ix_analysis_runs_snapshot_id', 'analysis_runs', ['snapshot_id'])
    op.create_index('ix_analysis_runs_phase_status', 'analysis_runs', ['phase_status'])

    op.create_table(
        'repository_findings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('finding_id', sa.String(32), nullable=False),
        sa.Column('snapshot_id', sa.Integer(),
                  sa.ForeignKey('repository_snapshots.id', ondelete='CASCADE'), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('run_id', sa.Integer(),
                  sa.ForeignKey('analysis_runs.id', ondelete='SET NULL'), nullable=True),
        sa.Column('framework', sa.String(20), nullable=False),
        sa.Column('control_id', sa.String(32), nullable=False),
        sa.Column('rule_id', sa.String(32), nullable=False),
        sa.Column('phase', sa.String(64), nullable=False),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('evidence', postgresql.JSONB(), nullable=True),
        sa.Column('recommendation', sa.String(2000), nullable=True),
        sa.Column('ai_model', sa.String(100), nullable=True),
        sa.Column('reviewed_by', sa.String(100), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_repository_findings_finding_id', 'repository_findings', ['finding_id'], unique=True)
    op.create_index('ix_repository_findings_snapshot_id', 'repository_findings', ['snapshot_id'])
    op.create_index('ix_repository_findings_organization_id', 'repository_findings', ['organization_id'])
    op.create_index('ix_repository_findings_framework', 'repository_findings', ['framework'])
    op.create_index('ix_repository_findings_status', 'repository_findings', ['status'])

    op.create_table(
        'finding_reviews',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('finding_id', sa.Integer(),
                  sa.ForeignKey('repository_findings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=False),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('reviewer', sa.String(100), nullable=False),
        sa.Column('notes', sa.String(5000), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_finding_reviews_finding_id', 'finding_reviews', ['finding_id'])

    op.create_table(
        'remediation_tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('task_id', sa.String(32), nullable=False),
        sa.Column('snapshot_id', sa.Integer(),
                  sa.ForeignKey('repository_snapshots.id', ondelete='CASCADE'), nullable=False),
        sa.Column('finding_id', sa.Integer(),
                  sa.ForeignKey('repository_findings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('finding_ids', postgresql.JSONB(), nullable=True),
        sa.Column('framework', sa.String(20), nullable=False),
        sa.Column('control_id', sa.String(32), nullable=False),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('description', sa.String(5000), nullable=False),
        sa.Column('category', sa.String(20), nullable=False),
        sa.Column('priority', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('assigned_to_role', sa.String(50), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('completed_by', sa.String(100), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_remediation_tasks_task_id', 'remediation_tasks', ['task_id'], unique=True)
    op.create_index('ix_remediation_tasks_snapshot_id', 'remediation_tasks', ['snapshot_id'])
    op.create_index('ix_remediation_tasks_priority', 'remediation_tasks', ['priority'])
    op.create_index('ix_remediation_tasks_status', 'remediation_tasks', ['status'])

    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(36), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=True),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('action', sa.String(500), nullable=False),
        sa.Column('resource_type', sa.String(30), nullable=True),
        sa.Column('resource_id', sa.String(50), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('previous_hash', sa.String(64), nullable=True),
        sa.Column('current_hash', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_audit_log_event_id', 'audit_log', ['event_id'], unique=True)
    op.create_index('ix_audit_log_organization_id', 'audit_log', ['organization_id'])
    op.create_index('ix_audit_log_event_type', 'audit_log', ['event_type'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('remediation_tasks')
    op.drop_table('finding_reviews')
    op.drop_table('repository_findings')
    op.drop_table('analysis_runs')
    op.drop_table('repository_files')
    op.drop_table('repository_snapshots')
