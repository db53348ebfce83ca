"""enable_rls_policies

Revision ID: 8d42e0b5c6a3
Revises: 3f1a9c2e7b10
Create Date: 2026-10-12 09:20:41.907112+00:00

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '8d42e0b5c6a3'
down_revision: Union[str, None] = '3f1a9c2e7b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Tables with organization_id that get RLS
RLS_TABLES = [
    "roles", "users", "projects", "approval_policies", "approval_requests",
    "tasks", "audit_logs", "app_notifications", "units", "leads", "sales",
    "payment_plans", "installments", "invoices", "payment_transactions",
]


def upgrade() -> None:
    for table in RLS_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY organization_isolation ON {table} "
            f"USING (organization_id = current_setting('app.current_organization_id', true)::uuid)"
        )

    # Pending-for-approver lookups (dashboard, /pending)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_approver_actions_pending "
        "ON approval_approver_actions(approver_id, approval_request_id) WHERE action = 'pending'"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_approver_actions_pending")
    for table in reversed(RLS_TABLES):
        op.execute(f"DROP POLICY IF EXISTS organization_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
