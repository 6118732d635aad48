from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from opsledger.app.db.base import utcnow
from opsledger.app.db.models.models_v1 import (
    ChannelListing,
    Item,
    ItemComponent,
    LineItem,
    Order,
    StockMovement,
)
from opsledger.app.db.models.core_types import MovementType, OUTGOING_MOVEMENTS
from opsledger.app.schemas.inventory import (
    ComponentShortage,
    LedgerReplay,
    OrderStockCheck,
    StockCheckResult,
    UnmappedLine,
)
from opsledger.services.components import resolve_effective_components
from opsledger.services.errors import InsufficientStock, ItemNotFound, OrderNotFound

logger = logging.getLogger(__name__)


def signed_delta(kind: MovementType, quantity) -> Decimal:
    """Sortie / ajustement négatif / transfert sortant -> négatif, sinon positif."""
    qty = abs(Decimal(str(quantity)))
    return -qty if MovementType(kind) in OUTGOING_MOVEMENTS else qty


def load_items_by_sku(db: Session, skus: Iterable[str]) -> dict[str, Item]:
    """
    Une seule requête pour tous les SKU (recettes chargées avec),
    évite le N+1 sur les lignes de commande.
    """
    skus = sorted({sku for sku in skus if sku})
    if not skus:
        return {}

    items = (
        db.execute(
            select(Item)
            .where(Item.sku.in_(skus))
            .options(selectinload(Item.components).selectinload(ItemComponent.component))
        )
        .scalars()
        .all()
    )
    return {item.sku: item for item in items}


def _lock_item(db: Session, item_id: int) -> Item | None:
    # populate_existing : le solde doit venir de la ligne verrouillée,
    # pas de l'identity map
    return (
        db.execute(
            select(Item)
            .where(Item.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )


def _load_listing(db: Session, sku: str) -> ChannelListing | None:
    return (
        db.execute(
            select(ChannelListing)
            .where(ChannelListing.sku == sku)
            .with_for_update()
        )
        .scalar_one_or_none()
    )


def _sync_listing_stock(db: Session, *, sku: str, delta: Decimal) -> None:
    """
    Répercute le mouvement sur le miroir ChannelListing du même SKU.

    Best effort, dans un SAVEPOINT : un échec est loggé et n'annule jamais
    l'écriture principale du ledger.
    """
    try:
        with db.begin_nested():
            listing = _load_listing(db, sku)
            if listing is None:
                return
            previous = listing.stock
            listing.stock = max(Decimal(0), previous + delta)
            listing.stock_synced_at = utcnow()
        logger.info("Listing %s stock: %s -> %s", sku, previous, listing.stock)
    except SQLAlchemyError:
        logger.warning("Could not update listing stock for %s", sku, exc_info=True)


def record_movement(
    db: Session,
    *,
    item_id: int,
    kind: MovementType,
    quantity,
    order_id: int | None = None,
    invoice_id: int | None = None,
    reference: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> StockMovement:
    """
    Enregistre un mouvement de stock et met à jour le solde de l'article.

    Une transaction par appel :
        1) solde de l'article (ligne verrouillée FOR UPDATE)
        2) miroir ChannelListing (best effort, SAVEPOINT)
        3) mouvement immuable avec solde avant / après

    Le solde ne devient jamais négatif : InsufficientStock est levée avant
    toute écriture. Tout échec -> rollback puis l'exception remonte.
    """
    kind = MovementType(kind)
    delta = signed_delta(kind, quantity)
    if delta == 0:
        raise ValueError("Movement quantity must be non-zero")

    try:
        item = _lock_item(db, item_id)
        if item is None:
            raise ItemNotFound(item_id)

        balance_before = Decimal(item.current_balance)
        balance_after = balance_before + delta
        if balance_after < 0:
            raise InsufficientStock(
                sku=item.sku,
                name=item.name,
                current=balance_before,
                requested=abs(delta),
            )

        sku = item.sku
        item.current_balance = balance_after
        db.flush()

        _sync_listing_stock(db, sku=sku, delta=delta)

        movement = StockMovement(
            item_id=item.id,
            kind=kind,
            quantity_delta=delta,
            balance_before=balance_before,
            balance_after=balance_after,
            order_id=order_id,
            invoice_id=invoice_id,
            reference=reference,
            notes=notes,
            created_by=created_by,
        )
        db.add(movement)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Stock %s %s: %s -> %s (%s)",
        kind.value,
        sku,
        balance_before,
        balance_after,
        delta,
    )
    return movement


def list_item_movements(db: Session, item_id: int) -> list[StockMovement]:
    return list(
        db.execute(
            select(StockMovement)
            .where(StockMovement.item_id == item_id)
            .order_by(StockMovement.id.asc())
        )
        .scalars()
        .all()
    )


def replay_item_ledger(db: Session, item_id: int) -> LedgerReplay:
    """
    Rejoue les mouvements dans l'ordre de création et vérifie la chaîne :
    continuité avant/après, jamais négatif, solde final == current_balance.
    """
    item = db.get(Item, item_id, populate_existing=True)
    if item is None:
        raise ItemNotFound(item_id)

    movements = list_item_movements(db, item_id)
    running = Decimal(0)
    problems: list[str] = []

    for mv in movements:
        if mv.balance_before != running:
            problems.append(f"Movement {mv.id}: balance_before {mv.balance_before} != replayed {running}")
        if mv.balance_before + mv.quantity_delta != mv.balance_after:
            problems.append(f"Movement {mv.id}: balance_after does not match balance_before + delta")
        running += mv.quantity_delta
        if running < 0:
            problems.append(f"Movement {mv.id}: replayed balance is negative ({running})")

    if running != item.current_balance:
        problems.append(f"Replayed balance {running} != current balance {item.current_balance}")

    return LedgerReplay(
        item_id=item.id,
        movement_count=len(movements),
        replayed_balance=running,
        current_balance=item.current_balance,
        consistent=not problems,
        problems=problems,
    )


# ---------- DISPONIBILITÉ (lecture seule) ----------
def _stock_check(item: Item, quantity: Decimal) -> StockCheckResult:
    balances = {item.id: Decimal(item.current_balance)}
    for comp in item.components:
        balances[comp.component.id] = Decimal(comp.component.current_balance)

    can_fulfill = True
    possible_units: list[Decimal] = []
    shortages: list[ComponentShortage] = []

    for comp in resolve_effective_components(item):
        required = comp.multiplier * quantity
        available = balances[comp.item_id]
        possible_units.append(available // comp.multiplier)

        if available < required:
            can_fulfill = False
            shortages.append(
                ComponentShortage(
                    item_id=comp.item_id,
                    sku=comp.sku,
                    name=comp.name,
                    required_quantity=required,
                    available_stock=available,
                    shortage=required - available,
                )
            )

    return StockCheckResult(
        item_id=item.id,
        sku=item.sku,
        name=item.name,
        is_composite=item.is_composite,
        has_recipe=bool(item.components),
        can_fulfill=can_fulfill,
        available_quantity=min(possible_units),
        requested_quantity=quantity,
        insufficient_components=shortages,
    )


def check_item_stock(db: Session, item_id: int, quantity) -> StockCheckResult:
    """
    Vérifie si `quantity` unités de l'article peuvent être servies.
    Pour un composé : quantité disponible = nb d'unités entières
    permises par le composant le plus limitant.
    """
    item = (
        db.execute(
            select(Item)
            .where(Item.id == item_id)
            .options(selectinload(Item.components).selectinload(ItemComponent.component))
        )
        .scalar_one_or_none()
    )
    if item is None:
        raise ItemNotFound(item_id)

    return _stock_check(item, Decimal(str(quantity)))


def check_order_stock(db: Session, order_id: int) -> OrderStockCheck:
    if db.get(Order, order_id) is None:
        raise OrderNotFound(order_id)

    lines = (
        db.execute(select(LineItem).where(LineItem.order_id == order_id).order_by(LineItem.id))
        .scalars()
        .all()
    )
    items = load_items_by_sku(db, (line.sku for line in lines))

    check = OrderStockCheck(can_fulfill=True)
    for line in lines:
        item = items.get(line.sku) if line.sku else None
        if item is None:
            check.unmapped_lines.append(UnmappedLine(sku=line.sku, title=line.title))
            continue

        result = _stock_check(item, Decimal(line.quantity))
        check.results.append(result)
        if not result.can_fulfill:
            check.insufficient_items.append(result)

    check.can_fulfill = not check.insufficient_items
    return check
