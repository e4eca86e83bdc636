"""Create workflow tables

Revision ID: 4f1c2a9e7b10
Revises:
Create Date: 2026-10-18 09:12:41.204311

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f1c2a9e7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'workflow_definitions',
        sa.Column('workflow_definition_id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500), nullable=False, server_default=''),
        sa.Column('version', sa.String(50), nullable=False, server_default='1.0.0'),
        sa.Column('definition_json', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('created_by', sa.String(100), nullable=False, server_default='System'),
        sa.UniqueConstraint('name', 'version', name='uq_workflow_definition_name_version'),
    )
    op.create_index('idx_wf_def_name_active', 'workflow_definitions', ['name', 'is_active'])

    op.create_table(
        'workflow_executions',
        sa.Column('workflow_execution_id', sa.String(36), primary_key=True),
        sa.Column('task_id', sa.String(36), nullable=False, unique=True),
        sa.Column('workflow_definition_id', sa.String(36),
                  sa.ForeignKey('workflow_definitions.workflow_definition_id'), nullable=False),
        sa.Column('current_step_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='Active'),
        sa.Column('context_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('started_by', sa.String(100), nullable=False, server_default='System'),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('last_updated', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text("1")),
    )
    op.create_index('idx_wf_exec_status', 'workflow_executions', ['status'])

    op.create_table(
        'workflow_audit_logs',
        sa.Column('sequence', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('workflow_audit_log_id', sa.String(36), nullable=False, unique=True),
        sa.Column('workflow_execution_id', sa.String(36),
                  sa.ForeignKey('workflow_executions.workflow_execution_id', ondelete='CASCADE'), nullable=False),
        sa.Column('step_id', sa.String(100), nullable=False, server_default=''),
        sa.Column('step_name', sa.String(200), nullable=False, server_default=''),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('result', sa.String(50), nullable=False),
        sa.Column('previous_step_id', sa.String(100), nullable=True),
        sa.Column('next_step_id', sa.String(100), nullable=True),
        sa.Column('decision', sa.String(50), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('conditions_evaluated', sa.Text(), nullable=True),
        sa.Column('context_snapshot', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('performed_by', sa.String(100), nullable=False, server_default='System'),
        sa.Column('duration_ms', sa.BigInteger(), nullable=True),
    )
    op.create_index(
        'idx_wf_audit_exec_ts', 'workflow_audit_logs',
        ['workflow_execution_id', 'timestamp', 'sequence'],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_wf_audit_exec_ts', table_name='workflow_audit_logs')
    op.drop_table('workflow_audit_logs')
    op.drop_index('idx_wf_exec_status', table_name='workflow_executions')
    op.drop_table('workflow_executions')
    op.drop_index('idx_wf_def_name_active', table_name='workflow_definitions')
    op.drop_table('workflow_definitions')
