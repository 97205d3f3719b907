"""invoices : champs du brouillon généré depuis un ticket de réparation"""

from alembic import op
import sqlalchemy as sa

revision = "20260301_0002"
down_revision = "20260101_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("invoices", sa.Column("invoice_date", sa.Date(), nullable=True))
    op.add_column("invoices", sa.Column("due_date", sa.Date(), nullable=True))
    op.add_column("invoices", sa.Column("notes", sa.Text(), nullable=True))
    op.add_column("invoices", sa.Column("created_by", sa.Uuid(), nullable=True))
    op.add_column("invoice_items", sa.Column("description", sa.String(length=255), nullable=True))
    op.add_column("invoice_items", sa.Column("line_order", sa.Integer(), nullable=True))


def downgrade() -> None:
    op.drop_column("invoice_items", "line_order")
    op.drop_column("invoice_items", "description")
    op.drop_column("invoices", "created_by")
    op.drop_column("invoices", "notes")
    op.drop_column("invoices", "due_date")
    op.drop_column("invoices", "invoice_date")
