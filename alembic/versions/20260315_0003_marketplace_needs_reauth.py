"""marketplace_accounts : drapeau needs_reauth"""

from alembic import op
import sqlalchemy as sa

revision = "20260315_0003"
down_revision = "20260301_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "marketplace_accounts",
        sa.Column("needs_reauth", sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_column("marketplace_accounts", "needs_reauth")
