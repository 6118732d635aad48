from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    LargeBinary,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsledger.app.db.base import Base, BigIntId, utcnow
from opsledger.app.db.models.core_types import (
    MovementType,
    TransferStatus,
    OrderStatus,
    InvoiceStatus,
    enum_values,
)

# ---------- BILLING ENTITIES ----------
class Company(Base):
    __tablename__ = "companies"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    cif: Mapped[str | None] = mapped_column(String(32))  # code fiscal
    reg_com: Mapped[str | None] = mapped_column(String(64))
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_vat_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))

    # identifiants du fournisseur de facturation
    provider_api_key: Mapped[str | None] = mapped_column(String(255))
    provider_username: Mapped[str | None] = mapped_column(String(255))
    provider_password: Mapped[str | None] = mapped_column(String(255))
    provider_tax_code: Mapped[str | None] = mapped_column(String(32))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class InvoiceSeries(Base):
    __tablename__ = "invoice_series"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    start_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # prochain numéro à attribuer (jamais le dernier émis)
    current_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    number_padding: Mapped[int] = mapped_column(Integer, default=6, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"), index=True)
    provider_series_code: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    company: Mapped[Company | None] = relationship()

    __table_args__ = (CheckConstraint("number_padding >= 1", name="ck_invoice_series_padding_pos"),)


class Store(Base):
    __tablename__ = "stores"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"))
    invoice_series_id: Mapped[int | None] = mapped_column(ForeignKey("invoice_series.id", ondelete="SET NULL"))

    company: Mapped[Company | None] = relationship()
    invoice_series: Mapped[InvoiceSeries | None] = relationship()


# ---------- CATALOG ----------
class Item(Base):
    __tablename__ = "items"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), default="pcs", nullable=False)

    # modifié UNIQUEMENT par le ledger (services.inventory.record_movement)
    current_balance: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    reorder_threshold: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=5, nullable=False)
    cost_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)

    is_composite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    components: Mapped[list["ItemComponent"]] = relationship(
        back_populates="composite_item",
        foreign_keys="ItemComponent.composite_item_id",
        order_by="ItemComponent.sort_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_item_balance_nonneg"),
        CheckConstraint("reorder_threshold >= 0", name="ck_item_reorder_nonneg"),
    )


class ItemComponent(Base):
    """Ligne de nomenclature (recette) d'un article composé."""

    __tablename__ = "item_components"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    composite_item_id: Mapped[int] = mapped_column(
        ForeignKey("items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    component_item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"), nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    composite_item: Mapped[Item] = relationship(back_populates="components", foreign_keys=[composite_item_id])
    component: Mapped[Item] = relationship(foreign_keys=[component_item_id])

    __table_args__ = (
        UniqueConstraint("composite_item_id", "component_item_id", name="uq_item_component_pair"),
        CheckConstraint("multiplier > 0", name="ck_item_component_multiplier_pos"),
        CheckConstraint("composite_item_id <> component_item_id", name="ck_item_component_not_self"),
    )


class ChannelListing(Base):
    """Miroir dénormalisé du stock par SKU (lu par la synchro marketplace)."""

    __tablename__ = "channel_listings"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    stock: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    stock_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# ---------- ORDERS ----------
class StockTransfer(Base):
    __tablename__ = "stock_transfers"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, name="transfer_status", values_callable=enum_values),
        default=TransferStatus.draft,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    store_id: Mapped[int | None] = mapped_column(ForeignKey("stores.id", ondelete="SET NULL"), index=True)
    billing_company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"))
    required_transfer_id: Mapped[int | None] = mapped_column(ForeignKey("stock_transfers.id", ondelete="SET NULL"))

    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status", values_callable=enum_values),
        default=OrderStatus.pending,
        nullable=False,
    )
    financial_status: Mapped[str | None] = mapped_column(String(32))  # paid | pending | refunded ...
    intercompany_status: Mapped[str | None] = mapped_column(String(32))

    currency: Mapped[str] = mapped_column(String(3), default="RON", nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)

    customer_first_name: Mapped[str | None] = mapped_column(String(128))
    customer_last_name: Mapped[str | None] = mapped_column(String(128))
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_phone: Mapped[str | None] = mapped_column(String(64))
    shipping_address1: Mapped[str | None] = mapped_column(String(255))
    shipping_address2: Mapped[str | None] = mapped_column(String(255))
    shipping_city: Mapped[str | None] = mapped_column(String(128))
    shipping_province: Mapped[str | None] = mapped_column(String(128))
    shipping_country: Mapped[str | None] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    store: Mapped[Store | None] = relationship()
    billing_company: Mapped[Company | None] = relationship()
    required_transfer: Mapped[StockTransfer | None] = relationship()
    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="order",
        order_by="LineItem.id",
        cascade="all, delete-orphan",
    )
    invoice: Mapped["Invoice | None"] = relationship(back_populates="order", uselist=False)


class LineItem(Base):
    __tablename__ = "line_items"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    sku: Mapped[str | None] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_title: Mapped[str | None] = mapped_column(String(255))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)  # prix unitaire TTC

    order: Mapped[Order] = relationship(back_populates="line_items")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_line_item_qty_pos"),)


# ---------- INVOICING ----------
class Invoice(Base):
    __tablename__ = "invoices"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"))
    invoice_series_id: Mapped[int | None] = mapped_column(ForeignKey("invoice_series.id", ondelete="SET NULL"))

    provider: Mapped[str | None] = mapped_column(String(32))
    series_prefix: Mapped[str | None] = mapped_column(String(32))
    invoice_number: Mapped[int | None] = mapped_column(Integer)
    external_id: Mapped[str | None] = mapped_column(String(128))

    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, name="invoice_status", values_callable=enum_values),
        default=InvoiceStatus.pending,
        nullable=False,
    )
    pdf_url: Mapped[str | None] = mapped_column(String(1024))
    pdf_data: Mapped[bytes | None] = mapped_column(LargeBinary)

    payment_status: Mapped[str | None] = mapped_column(String(16))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    order: Mapped[Order] = relationship(back_populates="invoice")
    company: Mapped[Company | None] = relationship()
    invoice_series: Mapped[InvoiceSeries | None] = relationship()

    __table_args__ = (Index("ix_invoices_series_number", "invoice_series_id", "invoice_number"),)


# ---------- INVENTORY ----------
class StockMovement(Base):
    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)

    item_id: Mapped[int] = mapped_column(
        ForeignKey("items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    kind: Mapped[MovementType] = mapped_column(
        Enum(MovementType, name="movement_type", values_callable=enum_values),
        nullable=False,
    )
    quantity_delta: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)

    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), index=True)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"))
    reference: Mapped[str | None] = mapped_column(String(128))
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    item: Mapped[Item] = relationship()

    __table_args__ = (
        CheckConstraint("quantity_delta <> 0", name="ck_stock_movement_delta_nonzero"),
        CheckConstraint("balance_before >= 0", name="ck_stock_movement_before_nonneg"),
        CheckConstraint("balance_after >= 0", name="ck_stock_movement_after_nonneg"),
        Index("ix_stock_movements_item_id_seq", "item_id", "id"),
    )


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor: Mapped[str | None] = mapped_column(String(128))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)
