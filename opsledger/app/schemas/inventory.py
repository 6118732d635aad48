from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class EffectiveComponent(BaseModel):
    """Article réellement mouvementé pour une unité vendue."""

    item_id: int
    sku: str
    name: str
    multiplier: Decimal


class MovementSummary(BaseModel):
    movement_id: int
    sku: str
    quantity: Decimal
    balance_after: Decimal


class OrderStockResult(BaseModel):
    success: bool = True
    processed_count: int = 0
    errors: list[str] = Field(default_factory=list)
    movements: list[MovementSummary] = Field(default_factory=list)


class ComponentShortage(BaseModel):
    item_id: int
    sku: str
    name: str
    required_quantity: Decimal
    available_stock: Decimal
    shortage: Decimal


class StockCheckResult(BaseModel):
    item_id: int
    sku: str
    name: str
    is_composite: bool
    has_recipe: bool
    can_fulfill: bool
    available_quantity: Decimal
    requested_quantity: Decimal
    insufficient_components: list[ComponentShortage] = Field(default_factory=list)


class UnmappedLine(BaseModel):
    sku: str | None
    title: str


class OrderStockCheck(BaseModel):
    can_fulfill: bool
    results: list[StockCheckResult] = Field(default_factory=list)
    insufficient_items: list[StockCheckResult] = Field(default_factory=list)
    unmapped_lines: list[UnmappedLine] = Field(default_factory=list)


class LedgerReplay(BaseModel):
    item_id: int
    movement_count: int
    replayed_balance: Decimal
    current_balance: Decimal
    consistent: bool
    problems: list[str] = Field(default_factory=list)


class StockStats(BaseModel):
    total_items: int
    total_value: Decimal
    low_stock_count: int
    out_of_stock_count: int
