"""Row-level security on turn sheets.

Revision ID: 20261001_000002
Revises: 20261001_000001
Create Date: 2026-10-01

This migration:
1. Enables RLS on turn_sheets
2. Adds a policy reading the caller scope from transaction-local settings
   (app.game_ids, app.game_subscription_ids, app.account_id)
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = "20261001_000002"
down_revision = "20261001_000001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("ALTER TABLE turn_sheets ENABLE ROW LEVEL SECURITY")
    op.execute(
        """
        CREATE POLICY turn_sheets_scope ON turn_sheets
        USING (
          game_id = ANY (string_to_array(NULLIF(current_setting('app.game_ids', true), ''), ',')::int[])
          AND game_subscription_id = ANY (
            string_to_array(NULLIF(current_setting('app.game_subscription_ids', true), ''), ',')::int[]
          )
          AND (
            NULLIF(current_setting('app.account_id', true), '') IS NULL
            OR account_id = current_setting('app.account_id', true)::int
          )
        )
        """
    )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP POLICY IF EXISTS turn_sheets_scope ON turn_sheets")
    op.execute("ALTER TABLE turn_sheets DISABLE ROW LEVEL SECURITY")
