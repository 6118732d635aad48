"""initial ledger and invoicing schema

Revision ID: 8f3c2a9d1b7e
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8f3c2a9d1b7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BigIntId = sa.BigInteger().with_variant(sa.Integer, "sqlite")

MOVEMENT_TYPE = sa.Enum(
    "IN", "OUT", "ADJUSTMENT_PLUS", "ADJUSTMENT_MINUS", "TRANSFER_IN", "TRANSFER_OUT",
    name="movement_type",
)
TRANSFER_STATUS = sa.Enum("DRAFT", "IN_TRANSIT", "COMPLETED", "CANCELLED", name="transfer_status")
ORDER_STATUS = sa.Enum(
    "PENDING", "INVOICE_PENDING", "INVOICED", "SHIPPED", "DELIVERED", "RETURNED", "CANCELLED",
    name="order_status",
)
INVOICE_STATUS = sa.Enum("pending", "issued", "failed", "cancelled", name="invoice_status")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("cif", sa.String(32)),
        sa.Column("reg_com", sa.String(64)),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("default_vat_rate", sa.Numeric(5, 2)),
        sa.Column("provider_api_key", sa.String(255)),
        sa.Column("provider_username", sa.String(255)),
        sa.Column("provider_password", sa.String(255)),
        sa.Column("provider_tax_code", sa.String(32)),
        _ts("created_at"),
    )

    op.create_table(
        "invoice_series",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("prefix", sa.String(32), nullable=False),
        sa.Column("start_number", sa.Integer, nullable=False, server_default="1"),
        sa.Column("current_number", sa.Integer, nullable=False, server_default="1"),
        sa.Column("number_padding", sa.Integer, nullable=False, server_default="6"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("company_id", BigIntId, sa.ForeignKey("companies.id", ondelete="SET NULL")),
        sa.Column("provider_series_code", sa.String(64)),
        _ts("created_at"),
        sa.CheckConstraint("number_padding >= 1", name="ck_invoice_series_padding_pos"),
    )
    op.create_index("ix_invoice_series_company_id", "invoice_series", ["company_id"])

    op.create_table(
        "stores",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("company_id", BigIntId, sa.ForeignKey("companies.id", ondelete="SET NULL")),
        sa.Column("invoice_series_id", BigIntId, sa.ForeignKey("invoice_series.id", ondelete="SET NULL")),
    )

    op.create_table(
        "items",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False, server_default="pcs"),
        sa.Column("current_balance", sa.Numeric(14, 3), nullable=False, server_default="0"),
        sa.Column("reorder_threshold", sa.Numeric(14, 3), nullable=False, server_default="5"),
        sa.Column("cost_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("is_composite", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("current_balance >= 0", name="ck_item_balance_nonneg"),
        sa.CheckConstraint("reorder_threshold >= 0", name="ck_item_reorder_nonneg"),
    )

    op.create_table(
        "item_components",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("composite_item_id", BigIntId, sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("component_item_id", BigIntId, sa.ForeignKey("items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("multiplier", sa.Numeric(14, 3), nullable=False),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("composite_item_id", "component_item_id", name="uq_item_component_pair"),
        sa.CheckConstraint("multiplier > 0", name="ck_item_component_multiplier_pos"),
        sa.CheckConstraint("composite_item_id <> component_item_id", name="ck_item_component_not_self"),
    )
    op.create_index("ix_item_components_composite_item_id", "item_components", ["composite_item_id"])

    op.create_table(
        "channel_listings",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("stock", sa.Numeric(14, 3), nullable=False, server_default="0"),
        _ts("stock_synced_at", nullable=True),
    )

    op.create_table(
        "stock_transfers",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("reference", sa.String(64), nullable=False, unique=True),
        sa.Column("status", TRANSFER_STATUS, nullable=False, server_default="DRAFT"),
        _ts("created_at"),
        _ts("completed_at", nullable=True),
    )

    op.create_table(
        "orders",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("store_id", BigIntId, sa.ForeignKey("stores.id", ondelete="SET NULL")),
        sa.Column("billing_company_id", BigIntId, sa.ForeignKey("companies.id", ondelete="SET NULL")),
        sa.Column("required_transfer_id", BigIntId, sa.ForeignKey("stock_transfers.id", ondelete="SET NULL")),
        sa.Column("status", ORDER_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("financial_status", sa.String(32)),
        sa.Column("intercompany_status", sa.String(32)),
        sa.Column("currency", sa.String(3), nullable=False, server_default="RON"),
        sa.Column("total_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("customer_first_name", sa.String(128)),
        sa.Column("customer_last_name", sa.String(128)),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("customer_phone", sa.String(64)),
        sa.Column("shipping_address1", sa.String(255)),
        sa.Column("shipping_address2", sa.String(255)),
        sa.Column("shipping_city", sa.String(128)),
        sa.Column("shipping_province", sa.String(128)),
        sa.Column("shipping_country", sa.String(128)),
        _ts("created_at"),
    )
    op.create_index("ix_orders_store_id", "orders", ["store_id"])

    op.create_table(
        "line_items",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("order_id", BigIntId, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sku", sa.String(64)),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("variant_title", sa.String(255)),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.CheckConstraint("quantity > 0", name="ck_line_item_qty_pos"),
    )
    op.create_index("ix_line_items_order_id", "line_items", ["order_id"])
    op.create_index("ix_line_items_sku", "line_items", ["sku"])

    op.create_table(
        "invoices",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("order_id", BigIntId, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("company_id", BigIntId, sa.ForeignKey("companies.id", ondelete="SET NULL")),
        sa.Column("invoice_series_id", BigIntId, sa.ForeignKey("invoice_series.id", ondelete="SET NULL")),
        sa.Column("provider", sa.String(32)),
        sa.Column("series_prefix", sa.String(32)),
        sa.Column("invoice_number", sa.Integer),
        sa.Column("external_id", sa.String(128)),
        sa.Column("status", INVOICE_STATUS, nullable=False, server_default="pending"),
        sa.Column("pdf_url", sa.String(1024)),
        sa.Column("pdf_data", sa.LargeBinary),
        sa.Column("payment_status", sa.String(16)),
        sa.Column("paid_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        _ts("paid_at", nullable=True),
        _ts("issued_at", nullable=True),
        sa.Column("error_message", sa.Text),
        _ts("cancelled_at", nullable=True),
        sa.Column("cancel_reason", sa.Text),
        _ts("deleted_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_invoices_series_number", "invoices", ["invoice_series_id", "invoice_number"])

    op.create_table(
        "stock_movements",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("item_id", BigIntId, sa.ForeignKey("items.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("kind", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity_delta", sa.Numeric(14, 3), nullable=False),
        sa.Column("balance_before", sa.Numeric(14, 3), nullable=False),
        sa.Column("balance_after", sa.Numeric(14, 3), nullable=False),
        sa.Column("order_id", BigIntId, sa.ForeignKey("orders.id", ondelete="SET NULL")),
        sa.Column("invoice_id", BigIntId, sa.ForeignKey("invoices.id", ondelete="SET NULL")),
        sa.Column("reference", sa.String(128)),
        sa.Column("notes", sa.Text),
        sa.Column("created_by", sa.String(128)),
        _ts("created_at"),
        sa.CheckConstraint("quantity_delta <> 0", name="ck_stock_movement_delta_nonzero"),
        sa.CheckConstraint("balance_before >= 0", name="ck_stock_movement_before_nonneg"),
        sa.CheckConstraint("balance_after >= 0", name="ck_stock_movement_after_nonneg"),
    )
    op.create_index("ix_stock_movements_item_id", "stock_movements", ["item_id"])
    op.create_index("ix_stock_movements_order_id", "stock_movements", ["order_id"])
    op.create_index("ix_stock_movements_item_id_seq", "stock_movements", ["item_id", "id"])

    op.create_table(
        "audit_log",
        sa.Column("id", BigIntId, primary_key=True),
        sa.Column("actor", sa.String(128)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.Text),
        _ts("created_at"),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "stock_movements",
        "invoices",
        "line_items",
        "orders",
        "stock_transfers",
        "channel_listings",
        "item_components",
        "items",
        "stores",
        "invoice_series",
        "companies",
    ):
        op.drop_table(table)

    # types ENUM : Postgres uniquement
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return
    for enum_type in (MOVEMENT_TYPE, INVOICE_STATUS, ORDER_STATUS, TRANSFER_STATUS):
        enum_type.drop(bind, checkfirst=True)
