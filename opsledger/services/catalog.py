from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from opsledger.app.db.models.models_v1 import Item, ItemComponent, LineItem
from opsledger.app.db.models.core_types import MovementType
from opsledger.app.schemas.inventory import StockStats
from opsledger.services.components import resolve_effective_components
from opsledger.services.errors import CompositionError, ItemNotFound
from opsledger.services.inventory import load_items_by_sku, record_movement

logger = logging.getLogger(__name__)


def find_item_by_sku(db: Session, sku: str) -> Item | None:
    return (
        db.execute(
            select(Item)
            .where(Item.sku == sku)
            .options(selectinload(Item.components).selectinload(ItemComponent.component))
        )
        .scalar_one_or_none()
    )


def upsert_item(
    db: Session,
    *,
    sku: str,
    name: str,
    unit: str | None = None,
    reorder_threshold=None,
    cost_price=None,
    opening_balance=0,
    created_by: str | None = None,
) -> Item:
    """
    Crée ou met à jour l'identité d'un article.

    Le solde n'est jamais écrit ici : un stock d'ouverture (création
    uniquement) passe par le ledger comme ADJUSTMENT_PLUS.
    """
    item = find_item_by_sku(db, sku)

    if item is not None:
        item.name = name
        if unit is not None:
            item.unit = unit
        if reorder_threshold is not None:
            item.reorder_threshold = Decimal(str(reorder_threshold))
        if cost_price is not None:
            item.cost_price = Decimal(str(cost_price))
        db.commit()
        return item

    item = Item(
        sku=sku,
        name=name,
        unit=unit or "pcs",
        current_balance=Decimal(0),
        reorder_threshold=Decimal(str(reorder_threshold if reorder_threshold is not None else 5)),
        cost_price=Decimal(str(cost_price or 0)),
    )
    db.add(item)
    db.commit()

    if opening_balance:
        record_movement(
            db,
            item_id=item.id,
            kind=MovementType.adjustment_plus,
            quantity=opening_balance,
            reference="OPENING",
            notes="Opening balance",
            created_by=created_by,
        )

    return item


def set_item_components(
    db: Session,
    item_id: int,
    components: Iterable[tuple[str, object]],
) -> Item:
    """
    Remplace la recette d'un article : liste ordonnée (sku composant, multiplicateur).

    Pas de composés imbriqués : refusé à la configuration (composant
    lui-même composé, auto-référence, ou article déjà composant d'un autre).
    Liste vide -> l'article redevient simple.
    """
    item = (
        db.execute(
            select(Item)
            .where(Item.id == item_id)
            .options(selectinload(Item.components))
        )
        .scalar_one_or_none()
    )
    if item is None:
        raise ItemNotFound(item_id)

    components = [(sku, Decimal(str(multiplier))) for sku, multiplier in components]
    skus = [sku for sku, _ in components]
    if len(set(skus)) != len(skus):
        raise CompositionError(f"Recipe for {item.sku} lists the same component more than once")

    if components:
        used_as_component = db.scalar(
            select(func.count())
            .select_from(ItemComponent)
            .where(ItemComponent.component_item_id == item.id)
        )
        if used_as_component:
            raise CompositionError(
                f"{item.sku} is a component of another composite item and cannot have its own recipe"
            )

    found = load_items_by_sku(db, skus)
    rows: list[ItemComponent] = []
    for position, (sku, multiplier) in enumerate(components):
        if multiplier <= 0:
            raise CompositionError(f"Multiplier for component {sku} must be greater than zero")

        component = found.get(sku)
        if component is None:
            raise ItemNotFound(sku)
        if component.id == item.id:
            raise CompositionError(f"{item.sku} cannot be a component of itself")
        if component.is_composite:
            raise CompositionError(
                f"{sku} is a composite item; nested recipes are not supported"
            )

        rows.append(ItemComponent(component=component, multiplier=multiplier, sort_order=position))

    item.components.clear()
    db.flush()
    item.components.extend(rows)
    item.is_composite = bool(rows)
    db.commit()

    logger.info("Recipe for %s set to %s component(s)", item.sku, len(rows))
    return item


def get_low_stock_items(db: Session) -> list[Item]:
    """Articles simples actifs dont le solde est <= seuil de réappro."""
    return list(
        db.execute(
            select(Item)
            .where(Item.is_active.is_(True))
            .where(Item.is_composite.is_(False))
            .where(Item.current_balance <= Item.reorder_threshold)
            .order_by(Item.current_balance.asc(), Item.sku.asc())
        )
        .scalars()
        .all()
    )


def get_stock_stats(db: Session) -> StockStats:
    items = (
        db.execute(
            select(Item)
            .where(Item.is_active.is_(True))
            .where(Item.is_composite.is_(False))
        )
        .scalars()
        .all()
    )

    return StockStats(
        total_items=len(items),
        total_value=sum((Decimal(i.current_balance) * Decimal(i.cost_price) for i in items), Decimal(0)),
        low_stock_count=sum(1 for i in items if i.current_balance <= i.reorder_threshold),
        out_of_stock_count=sum(1 for i in items if i.current_balance <= 0),
    )


def calculate_order_cost(db: Session, order_id: int) -> Decimal:
    """Coût des marchandises d'une commande, composés éclatés en composants."""
    lines = db.execute(select(LineItem).where(LineItem.order_id == order_id)).scalars().all()
    items = load_items_by_sku(db, (line.sku for line in lines))

    total = Decimal(0)
    for line in lines:
        item = items.get(line.sku) if line.sku else None
        if item is None:
            continue

        costs = {item.id: Decimal(item.cost_price)}
        for comp in item.components:
            costs[comp.component.id] = Decimal(comp.component.cost_price)

        for comp in resolve_effective_components(item):
            total += costs[comp.item_id] * comp.multiplier * line.quantity

    return total
