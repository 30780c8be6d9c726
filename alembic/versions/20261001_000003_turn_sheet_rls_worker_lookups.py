"""Force turn sheet RLS and admit privileged worker lookups.

Revision ID: 20261001_000003
Revises: 20261001_000002
Create Date: 2026-10-01

This migration:
1. Forces RLS on turn_sheets so the policy binds the table owner too
2. Replaces the scope policy with one that also admits rows while the
   transaction-local setting app.bypass_rls is 'on'
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = "20261001_000003"
down_revision = "20261001_000002"
branch_labels = None
depends_on = None

SCOPE_CLAUSE = """
  game_id = ANY (string_to_array(NULLIF(current_setting('app.game_ids', true), ''), ',')::int[])
  AND game_subscription_id = ANY (
    string_to_array(NULLIF(current_setting('app.game_subscription_ids', true), ''), ',')::int[]
  )
  AND (
    NULLIF(current_setting('app.account_id', true), '') IS NULL
    OR account_id = current_setting('app.account_id', true)::int
  )
"""

BYPASS_CLAUSE = "current_setting('app.bypass_rls', true) = 'on'"


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP POLICY IF EXISTS turn_sheets_scope ON turn_sheets")
    op.execute(
        f"""
        CREATE POLICY turn_sheets_scope ON turn_sheets
        USING ({BYPASS_CLAUSE} OR ({SCOPE_CLAUSE}))
        WITH CHECK ({SCOPE_CLAUSE})
        """
    )
    op.execute("ALTER TABLE turn_sheets FORCE ROW LEVEL SECURITY")


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("ALTER TABLE turn_sheets NO FORCE ROW LEVEL SECURITY")
    op.execute("DROP POLICY IF EXISTS turn_sheets_scope ON turn_sheets")
    op.execute(f"CREATE POLICY turn_sheets_scope ON turn_sheets USING ({SCOPE_CLAUSE})")
