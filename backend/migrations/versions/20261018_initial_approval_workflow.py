"""Initial schema: auth, workflow configuration, receiving, approval records

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration adds:
1. Users, roles, permissions, session tokens and security events
2. Workflow stages, next-stage links, transitions and stage permission grants
3. Invoice receiving documents and lines
4. Approval records (QC / warehouse, single table), line items, manager approvals
5. Workflow history, audit log, notifications and record number sequences
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. AUTH AND SECURITY
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=128), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_users_username'), ['username'], unique=False)

    op.create_table('roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sqlite_autoincrement=True
    )

    op.create_table('permissions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('permissions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_permissions_code'), ['code'], unique=True)
        batch_op.create_index(batch_op.f('ix_permissions_category'), ['category'], unique=False)

    op.create_table('user_roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role_id', sa.Integer(), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'role_id', name='uq_user_roles'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('user_roles', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_user_roles_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_user_roles_role_id'), ['role_id'], unique=False)

    op.create_table('role_permissions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('role_id', sa.Integer(), nullable=False),
        sa.Column('permission_id', sa.Integer(), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id'], ),
        sa.ForeignKeyConstraint(['permission_id'], ['permissions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('role_id', 'permission_id', name='uq_role_permissions'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('role_permissions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_role_permissions_role_id'), ['role_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_role_permissions_permission_id'), ['permission_id'], unique=False)

    op.create_table('session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('session_tokens', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_session_tokens_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_token_hash'), ['token_hash'], unique=True)
        batch_op.create_index(batch_op.f('ix_session_tokens_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_is_revoked'), ['is_revoked'], unique=False)
        batch_op.create_index('ix_session_tokens_user_active', ['user_id', 'is_revoked'], unique=False)

    op.create_table('security_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('resource', sa.String(length=128), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('security_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_security_events_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_security_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_security_events_success'), ['success'], unique=False)
        batch_op.create_index(batch_op.f('ix_security_events_occurred_at'), ['occurred_at'], unique=False)
        batch_op.create_index('ix_security_events_user_type', ['user_id', 'event_type'], unique=False)

    # ==========================================================================
    # 2. WORKFLOW CONFIGURATION
    # ==========================================================================
    op.create_table('workflow_stages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('allowed_actions', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('updated_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['updated_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('workflow_stages', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_workflow_stages_code'), ['code'], unique=True)
        batch_op.create_index('ix_workflow_stages_sequence', ['sequence'], unique=False)

    op.create_table('workflow_stage_required_permissions',
        sa.Column('stage_id', sa.Integer(), nullable=False),
        sa.Column('permission_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['stage_id'], ['workflow_stages.id'], ),
        sa.ForeignKeyConstraint(['permission_id'], ['permissions.id'], ),
        sa.PrimaryKeyConstraint('stage_id', 'permission_id')
    )

    op.create_table('workflow_stage_next_stages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('stage_id', sa.Integer(), nullable=False),
        sa.Column('next_stage_id', sa.Integer(), nullable=False),
        sa.Column('is_rework', sa.Boolean(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['stage_id'], ['workflow_stages.id'], ),
        sa.ForeignKeyConstraint(['next_stage_id'], ['workflow_stages.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stage_id', 'next_stage_id', name='uq_stage_next_stage'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('workflow_stage_next_stages', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_workflow_stage_next_stages_stage_id'), ['stage_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_workflow_stage_next_stages_next_stage_id'), ['next_stage_id'], unique=False)

    op.create_table('workflow_transitions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('from_stage_id', sa.Integer(), nullable=False),
        sa.Column('to_stage_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('conditions', sa.JSON(), nullable=True),
        sa.Column('auto_transition', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('required_fields', sa.JSON(), nullable=False),
        sa.Column('notification_template', sa.String(length=255), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('updated_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['from_stage_id'], ['workflow_stages.id'], ),
        sa.ForeignKeyConstraint(['to_stage_id'], ['workflow_stages.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['updated_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('workflow_transitions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_workflow_transitions_from_stage_id'), ['from_stage_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_workflow_transitions_to_stage_id'), ['to_stage_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_workflow_transitions_action'), ['action'], unique=False)
        batch_op.create_index('ix_workflow_transitions_from_action', ['from_stage_id', 'action'], unique=False)

    op.create_table('stage_permissions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('stage_id', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('assigned_by_user_id', sa.Integer(), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('revoked_by_user_id', sa.Integer(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['stage_id'], ['workflow_stages.id'], ),
        sa.ForeignKeyConstraint(['assigned_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['revoked_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'stage_id', name='uq_stage_permissions_user_stage'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stage_permissions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stage_permissions_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stage_permissions_stage_id'), ['stage_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stage_permissions_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index('ix_stage_permissions_stage_active', ['stage_id', 'is_active'], unique=False)

    op.create_table('stage_permission_items',
        sa.Column('stage_permission_id', sa.Integer(), nullable=False),
        sa.Column('permission_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['stage_permission_id'], ['stage_permissions.id'], ),
        sa.ForeignKeyConstraint(['permission_id'], ['permissions.id'], ),
        sa.PrimaryKeyConstraint('stage_permission_id', 'permission_id')
    )

    # ==========================================================================
    # 3. INVOICE RECEIVING
    # ==========================================================================
    op.create_table('invoice_receivings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_order_ref', sa.String(length=64), nullable=True),
        sa.Column('principal_id', sa.Integer(), nullable=True),
        sa.Column('warehouse_id', sa.Integer(), nullable=True),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('invoice_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('received_by_user_id', sa.Integer(), nullable=False),
        sa.Column('workflow_status', sa.String(length=32), nullable=False, server_default='received'),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['received_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('principal_id', 'invoice_number', name='uq_invoice_receivings_principal_invoice'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('invoice_receivings', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_invoice_receivings_purchase_order_ref'), ['purchase_order_ref'], unique=False)
        batch_op.create_index(batch_op.f('ix_invoice_receivings_principal_id'), ['principal_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_invoice_receivings_warehouse_id'), ['warehouse_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_invoice_receivings_invoice_number'), ['invoice_number'], unique=False)
        batch_op.create_index(batch_op.f('ix_invoice_receivings_workflow_status'), ['workflow_status'], unique=False)

    op.create_table('invoice_receiving_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_receiving_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('product_code', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('batch_no', sa.String(length=64), nullable=True),
        sa.Column('mfg_date', sa.Date(), nullable=True),
        sa.Column('exp_date', sa.Date(), nullable=True),
        sa.Column('ordered_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('received_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('foc_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['invoice_receiving_id'], ['invoice_receivings.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('invoice_receiving_lines', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_invoice_receiving_lines_invoice_receiving_id'), ['invoice_receiving_id'], unique=False)

    # ==========================================================================
    # 4. APPROVAL RECORDS
    # ==========================================================================
    op.create_table('approval_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('record_type', sa.String(length=32), nullable=False),
        sa.Column('record_number', sa.String(length=64), nullable=False),
        sa.Column('upstream_type', sa.String(length=32), nullable=False),
        sa.Column('upstream_id', sa.Integer(), nullable=False),
        sa.Column('invoice_receiving_id', sa.Integer(), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='medium'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('current_stage_id', sa.Integer(), nullable=True),
        sa.Column('assigned_to_user_id', sa.Integer(), nullable=True),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rejected_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('required_levels', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('approval_round', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('final_approval_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submitted_by_user_id', sa.Integer(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submission_remarks', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=False),
        sa.Column('updated_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['invoice_receiving_id'], ['invoice_receivings.id'], ),
        sa.ForeignKeyConstraint(['current_stage_id'], ['workflow_stages.id'], ),
        sa.ForeignKeyConstraint(['assigned_to_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['submitted_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['updated_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('record_type', 'upstream_type', 'upstream_id', name='uq_approval_records_upstream'),
        sa.UniqueConstraint('record_number', name='uq_approval_records_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('approval_records', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_approval_records_record_type'), ['record_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_approval_records_invoice_receiving_id'), ['invoice_receiving_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_approval_records_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_approval_records_current_stage_id'), ['current_stage_id'], unique=False)
        batch_op.create_index('ix_approval_records_type_status', ['record_type', 'status'], unique=False)
        batch_op.create_index('ix_approval_records_assigned', ['assigned_to_user_id', 'status'], unique=False)

    op.create_table('line_item_decisions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('record_id', sa.Integer(), nullable=False),
        sa.Column('source_line_id', sa.Integer(), nullable=True),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('product_code', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('batch_no', sa.String(length=64), nullable=True),
        sa.Column('mfg_date', sa.Date(), nullable=True),
        sa.Column('exp_date', sa.Date(), nullable=True),
        sa.Column('expected_qty', sa.Integer(), nullable=False),
        sa.Column('decided_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('decision', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('checks', sa.JSON(), nullable=True),
        sa.Column('decided_by_user_id', sa.Integer(), nullable=True),
        sa.Column('decided_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['record_id'], ['approval_records.id'], ),
        sa.ForeignKeyConstraint(['decided_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('line_item_decisions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_line_item_decisions_record_id'), ['record_id'], unique=False)
        batch_op.create_index('ix_line_item_decisions_record_decision', ['record_id', 'decision'], unique=False)

    op.create_table('manager_approvals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('record_id', sa.Integer(), nullable=False),
        sa.Column('approval_round', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('approver_user_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('acted_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['record_id'], ['approval_records.id'], ),
        sa.ForeignKeyConstraint(['approver_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('record_id', 'approval_round', 'level', name='uq_manager_approvals_round_level'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('manager_approvals', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_manager_approvals_record_id'), ['record_id'], unique=False)

    # ==========================================================================
    # 5. HISTORY, AUDIT, NOTIFICATIONS, SEQUENCES
    # ==========================================================================
    op.create_table('workflow_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('record_id', sa.Integer(), nullable=False),
        sa.Column('from_stage_id', sa.Integer(), nullable=True),
        sa.Column('from_stage_code', sa.String(length=64), nullable=True),
        sa.Column('from_stage_name', sa.String(length=128), nullable=True),
        sa.Column('to_stage_id', sa.Integer(), nullable=False),
        sa.Column('to_stage_code', sa.String(length=64), nullable=False),
        sa.Column('to_stage_name', sa.String(length=128), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('transition_id', sa.Integer(), nullable=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['record_id'], ['approval_records.id'], ),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('workflow_history', schema=None) as batch_op:
        batch_op.create_index('ix_workflow_history_record', ['record_id', 'occurred_at'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('audit_logs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_audit_logs_event_type'), ['event_type'], unique=False)
        batch_op.create_index('ix_audit_logs_entity', ['entity_type', 'entity_id'], unique=False)

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('record_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['record_id'], ['approval_records.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('notifications', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_notifications_record_id'), ['record_id'], unique=False)
        batch_op.create_index('ix_notifications_user_read', ['user_id', 'is_read'], unique=False)

    op.create_table('document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('prefix', sa.String(length=16), nullable=False),
        sa.Column('period', sa.String(length=6), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('prefix', 'period', name='uq_doc_sequences_prefix_period'),
        sqlite_autoincrement=True
    )


def downgrade():
    op.drop_table('document_sequences')
    op.drop_table('notifications')
    op.drop_table('audit_logs')
    op.drop_table('workflow_history')
    op.drop_table('manager_approvals')
    op.drop_table('line_item_decisions')
    op.drop_table('approval_records')
    op.drop_table('invoice_receiving_lines')
    op.drop_table('invoice_receivings')
    op.drop_table('stage_permission_items')
    op.drop_table('stage_permissions')
    op.drop_table('workflow_transitions')
    op.drop_table('workflow_stage_next_stages')
    op.drop_table('workflow_stage_required_permissions')
    op.drop_table('workflow_stages')
    op.drop_table('security_events')
    op.drop_table('session_tokens')
    op.drop_table('role_permissions')
    op.drop_table('user_roles')
    op.drop_table('permissions')
    op.drop_table('roles')
    op.drop_table('users')
