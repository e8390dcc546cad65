"""initial schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


ENTRY_TYPE = sa.Enum("INCOME", "EXPENSE", "TRANSFER", name="entrytype")
PERIOD_TYPE = sa.Enum("WEEKLY", "MONTHLY", name="periodtype")

COORDINATE = (
    "tenant_id",
    "period_type",
    "period_start",
    "entry_type",
    "category_key",
    "account_id",
    "is_recurring",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_account_tenant_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", ENTRY_TYPE, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "type", "name", name="uq_category_tenant_type_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", ENTRY_TYPE, nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("description", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_transactions_tenant_date", "transactions", ["tenant_id", "date"])
    op.create_index(
        "ix_transactions_tenant_category_date",
        "transactions",
        ["tenant_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_tenant_type_date", "transactions", ["tenant_id", "type", "date"]
    )

    op.create_table(
        "financial_cube",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("entry_type", ENTRY_TYPE, nullable=False),
        sa.Column("category_key", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("account_name", sa.String(length=100), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "total_amount_cents", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("entry_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(*COORDINATE, name="uq_cube_coordinate"),
        sa.CheckConstraint("entry_count >= 0", name="ck_cube_count_non_negative"),
    )
    op.create_index(
        "ix_cube_tenant_category_start",
        "financial_cube",
        ["tenant_id", "category_key", "period_start"],
    )
    op.create_index(
        "ix_cube_tenant_account_start",
        "financial_cube",
        ["tenant_id", "account_id", "period_start"],
    )
    op.create_index(
        "ix_cube_tenant_type_start",
        "financial_cube",
        ["tenant_id", "entry_type", "period_start"],
    )
    op.create_index("ix_cube_updated_at", "financial_cube", ["updated_at"])

    op.create_table(
        "cube_period_locks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "period_type", "period_start", name="uq_cube_period_lock"
        ),
    )

    op.create_table(
        "cube_applied_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("entry_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "idempotency_key", name="uq_applied_event_key"
        ),
    )

    op.create_table(
        "cube_discrepancies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("entry_type", ENTRY_TYPE, nullable=False),
        sa.Column("category_key", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("expected_total_cents", sa.BigInteger(), nullable=False),
        sa.Column("expected_count", sa.Integer(), nullable=False),
        sa.Column("actual_total_cents", sa.BigInteger(), nullable=False),
        sa.Column("actual_count", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_cube_discrepancy_coordinate", "cube_discrepancies", list(COORDINATE)
    )


def downgrade():
    op.drop_index("ix_cube_discrepancy_coordinate", table_name="cube_discrepancies")
    op.drop_table("cube_discrepancies")
    op.drop_table("cube_applied_events")
    op.drop_table("cube_period_locks")
    for name in (
        "ix_cube_updated_at",
        "ix_cube_tenant_type_start",
        "ix_cube_tenant_account_start",
        "ix_cube_tenant_category_start",
    ):
        op.drop_index(name, table_name="financial_cube")
    op.drop_table("financial_cube")
    for name in (
        "ix_transactions_tenant_type_date",
        "ix_transactions_tenant_category_date",
        "ix_transactions_tenant_date",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("accounts")
    ENTRY_TYPE.drop(op.get_bind(), checkfirst=True)
    PERIOD_TYPE.drop(op.get_bind(), checkfirst=True)
