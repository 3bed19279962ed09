"""supplier ledger and merges

Revision ID: 5a1f0c2d7e31
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5a1f0c2d7e31"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "suppliers",
        sa.Column("id", PK, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("phone", sa.String(32)),
        sa.Column("email", sa.String(255)),
        sa.Column("city", sa.String(128)),
        sa.Column("address", sa.String(255)),
        sa.Column("category", sa.String(64)),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("opening_balance", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_protected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "purchase_invoices",
        sa.Column("id", PK, primary_key=True),
        sa.Column("invoice_number", sa.String(64), nullable=False, unique=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("invoice_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("total_amount >= 0", name="ck_purchase_invoice_total_nonneg"),
    )
    op.create_index("ix_purchase_invoices_supplier_id", "purchase_invoices", ["supplier_id"])

    op.create_table(
        "supplier_payments",
        sa.Column("id", PK, primary_key=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("method", sa.String(32), nullable=False, server_default="CASH"),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_supplier_payment_amount_pos"),
    )
    op.create_index("ix_supplier_payments_supplier_id", "supplier_payments", ["supplier_id"])

    op.create_table(
        "supplier_merges",
        sa.Column("id", PK, primary_key=True),
        sa.Column("source_supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("target_supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("undo_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_permanent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("permanent_at", sa.DateTime(timezone=True)),
        sa.Column("source_snapshot", sa.Text(), nullable=False),
        sa.Column("moved_invoice_ids", sa.JSON(), nullable=False),
        sa.Column("moved_payment_ids", sa.JSON(), nullable=False),
        sa.Column("merged_balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("merged_opening_balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("requested_by", sa.String(128)),
        sa.CheckConstraint("source_supplier_id <> target_supplier_id", name="ck_supplier_merge_distinct"),
    )
    op.create_index("ix_supplier_merges_source_supplier_id", "supplier_merges", ["source_supplier_id"])
    op.create_index("ix_supplier_merges_target_supplier_id", "supplier_merges", ["target_supplier_id"])
    op.create_index("ix_supplier_merges_pending", "supplier_merges", ["is_permanent", "undo_deadline"])

    op.create_table(
        "audit_log",
        sa.Column("id", PK, primary_key=True),
        sa.Column("actor", sa.String(128)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_supplier_merges_pending", table_name="supplier_merges")
    op.drop_index("ix_supplier_merges_target_supplier_id", table_name="supplier_merges")
    op.drop_index("ix_supplier_merges_source_supplier_id", table_name="supplier_merges")
    op.drop_table("supplier_merges")
    op.drop_index("ix_supplier_payments_supplier_id", table_name="supplier_payments")
    op.drop_table("supplier_payments")
    op.drop_index("ix_purchase_invoices_supplier_id", table_name="purchase_invoices")
    op.drop_table("purchase_invoices")
    op.drop_table("suppliers")
