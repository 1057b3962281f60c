"""initial_workflow_schema

Revision ID: 0001a2b3c4d5
Revises:
Create Date: 2026-10-18 09:00:00.000000

Directory (users, departments, positions, assignments), approval matrix,
requests with their approval steps, delegations and the audit trail.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001a2b3c4d5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _version() -> sa.Column:
    return sa.Column('version', sa.Integer(), server_default='1', nullable=False)


def upgrade() -> None:
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(50), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'departments',
        _id(),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_departments_code', 'departments', ['code'], unique=True)

    op.create_table(
        'positions',
        _id(),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('department_id', postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['department_id'], ['departments.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_positions_code', 'positions', ['code'], unique=True)
    op.create_index('ix_positions_department_id', 'positions', ['department_id'])

    op.create_table(
        'user_positions',
        _id(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('position_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['position_id'], ['positions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_positions_user_id', 'user_positions', ['user_id'])
    op.create_index('ix_user_positions_position_id', 'user_positions', ['position_id'])

    op.create_table(
        'approval_matrix_rules',
        _id(),
        sa.Column('module', sa.String(100), nullable=False),
        sa.Column('requester_role', sa.String(50), nullable=True),
        sa.Column('requester_position', sa.String(50), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('approver_type', sa.String(30), nullable=False),
        sa.Column('approver_value', sa.String(255), nullable=False),
        sa.Column('conditions', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_approval_matrix_rules_module', 'approval_matrix_rules', ['module'])

    op.create_table(
        'requests',
        _id(),
        sa.Column('request_number', sa.String(64), nullable=False),
        sa.Column('module', sa.String(100), nullable=False),
        sa.Column('request_type', sa.String(100), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('current_step', sa.Integer(), nullable=False),
        sa.Column('requester_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        _version(),
        *_timestamps(),
        sa.ForeignKeyConstraint(['requester_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_requests_request_number', 'requests', ['request_number'], unique=True)
    op.create_index('ix_requests_module', 'requests', ['module'])
    op.create_index('ix_requests_status', 'requests', ['status'])
    op.create_index('ix_requests_requester_id', 'requests', ['requester_id'])

    op.create_table(
        'approval_steps',
        _id(),
        sa.Column('request_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('approver_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('approver_type', sa.String(30), nullable=False),
        sa.Column('matrix_rule_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('action', sa.String(20), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('acted_by_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('decided_at', sa.DateTime(timezone=True), nullable=True),
        _version(),
        *_timestamps(),
        sa.ForeignKeyConstraint(['request_id'], ['requests.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['approver_id'], ['users.id']),
        sa.ForeignKeyConstraint(['acted_by_id'], ['users.id']),
        sa.ForeignKeyConstraint(['matrix_rule_id'], ['approval_matrix_rules.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('request_id', 'approver_id', 'sequence', name='uq_approval_steps_request_approver_seq'),
    )
    op.create_index('ix_approval_steps_request_id', 'approval_steps', ['request_id'])
    op.create_index('ix_approval_steps_approver_id', 'approval_steps', ['approver_id'])
    op.create_index('ix_approval_steps_status', 'approval_steps', ['status'])

    op.create_table(
        'approval_delegations',
        _id(),
        sa.Column('delegator_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('delegate_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('module', sa.String(100), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        _version(),
        *_timestamps(),
        sa.ForeignKeyConstraint(['delegator_id'], ['users.id']),
        sa.ForeignKeyConstraint(['delegate_id'], ['users.id']),
        sa.ForeignKeyConstraint(['created_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_approval_delegations_delegator_id', 'approval_delegations', ['delegator_id'])
    op.create_index('ix_approval_delegations_delegate_id', 'approval_delegations', ['delegate_id'])

    op.create_table(
        'audit_logs',
        _id(),
        sa.Column('actor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(100), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('before_state', sa.Text(), nullable=True),
        sa.Column('after_state', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['actor_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])

    # Audit trail is append-only for the application role
    op.execute("REVOKE UPDATE, DELETE ON audit_logs FROM PUBLIC;")
    op.execute("GRANT SELECT, INSERT ON audit_logs TO PUBLIC;")


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('approval_delegations')
    op.drop_table('approval_steps')
    op.drop_table('requests')
    op.drop_table('approval_matrix_rules')
    op.drop_table('user_positions')
    op.drop_table('positions')
    op.drop_table('departments')
    op.drop_table('users')
