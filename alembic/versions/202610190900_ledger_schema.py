"""ledger schema: accounts, categories, operations

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_debt", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon_name", sa.String(length=50), nullable=False, server_default=""),
        sa.Column(
            "type",
            sa.Enum("revenue", "expense", "both", name="categorytype"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "operations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "account_id", sa.String(length=36), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "type",
            sa.Enum("revenue", "expense", "transfer", name="operationtype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.String(length=64)),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("linked_operation_id", sa.String(length=36)),
        sa.Column("to_account_id", sa.String(length=36), sa.ForeignKey("accounts.id")),
        sa.Column("leg", sa.Enum("outgoing", "incoming", name="transferleg")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_operations_amount_positive"),
        sa.CheckConstraint(
            "(type = 'transfer') = (linked_operation_id IS NOT NULL)",
            name="ck_operations_transfer_link",
        ),
    )
    op.create_index(
        "ix_operations_account_date",
        "operations",
        ["account_id", "date", "created_at"],
    )
    op.create_index("ix_operations_linked", "operations", ["linked_operation_id"])
    op.create_index("ix_operations_to_account", "operations", ["to_account_id"])


def downgrade():
    op.drop_index("ix_operations_to_account", table_name="operations")
    op.drop_index("ix_operations_linked", table_name="operations")
    op.drop_index("ix_operations_account_date", table_name="operations")
    op.drop_table("operations")
    op.drop_table("categories")
    op.drop_table("accounts")
