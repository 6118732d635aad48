"""
Mouvements de stock déclenchés par une commande : vente (sortie) et retour.

Chaque composant = une transaction ledger indépendante. Un échec sur un
composant est collecté dans `errors` et le traitement continue : le
résultat peut être partiel, l'appelant inspecte `errors`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opsledger.app.db.models.models_v1 import LineItem, Order
from opsledger.app.db.models.core_types import MovementType
from opsledger.app.schemas.inventory import MovementSummary, OrderStockResult
from opsledger.services.components import resolve_effective_components
from opsledger.services.errors import LedgerError
from opsledger.services.inventory import load_items_by_sku, record_movement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PlannedMovement:
    line_title: str
    item_id: int
    sku: str
    quantity: Decimal


def _plan_order_movements(db: Session, order: Order) -> list[_PlannedMovement]:
    """
    Calcule tous les mouvements AVANT le premier commit : après un commit
    les objets ORM sont expirés, le plan ne garde que des valeurs.
    """
    lines = (
        db.execute(select(LineItem).where(LineItem.order_id == order.id).order_by(LineItem.id))
        .scalars()
        .all()
    )
    items = load_items_by_sku(db, (line.sku for line in lines))

    plan: list[_PlannedMovement] = []
    for line in lines:
        if not line.sku:
            logger.warning("Order %s: line '%s' has no SKU, skipped", order.order_number, line.title)
            continue

        item = items.get(line.sku)
        if item is None:
            logger.warning("Order %s: SKU %s not in catalog, skipped", order.order_number, line.sku)
            continue

        for comp in resolve_effective_components(item):
            plan.append(
                _PlannedMovement(
                    line_title=line.title,
                    item_id=comp.item_id,
                    sku=comp.sku,
                    quantity=comp.multiplier * line.quantity,
                )
            )

    return plan


def _process_order_lines(
    db: Session,
    order_id: int,
    *,
    kind: MovementType,
    invoice_id: int | None,
    reference: str | None,
    notes_for,
    error_verb: str,
    created_by: str | None,
) -> OrderStockResult:
    order = db.get(Order, order_id)
    if order is None:
        return OrderStockResult(success=False, errors=[f"Order {order_id} was not found"])

    order_number = order.order_number
    plan = _plan_order_movements(db, order)
    result = OrderStockResult()

    for planned in plan:
        try:
            movement = record_movement(
                db,
                item_id=planned.item_id,
                kind=kind,
                quantity=planned.quantity,
                order_id=order_id,
                invoice_id=invoice_id,
                reference=reference,
                notes=notes_for(order_number, planned.line_title),
                created_by=created_by,
            )
        except LedgerError as exc:
            result.errors.append(f"Could not {error_verb} stock for {planned.sku}: {exc.message}")
            continue
        except (SQLAlchemyError, ValueError) as exc:
            logger.warning("Order %s: movement for %s failed", order_number, planned.sku, exc_info=True)
            result.errors.append(f"Could not {error_verb} stock for {planned.sku}: {exc}")
            continue

        result.processed_count += 1
        result.movements.append(
            MovementSummary(
                movement_id=movement.id,
                sku=planned.sku,
                quantity=planned.quantity,
                balance_after=movement.balance_after,
            )
        )

    logger.info(
        "Order %s: %s movement(s) %s, %s error(s)",
        order_number,
        result.processed_count,
        kind.value,
        len(result.errors),
    )
    return result


def process_outbound_for_order(
    db: Session,
    order_id: int,
    invoice_id: int | None = None,
    *,
    created_by: str | None = None,
) -> OrderStockResult:
    """Sortie de stock pour une commande vendue (composés éclatés)."""
    return _process_order_lines(
        db,
        order_id,
        kind=MovementType.outbound,
        invoice_id=invoice_id,
        reference=None,
        notes_for=lambda number, title: f"Sale - order {number}, product: {title}",
        error_verb="decrement",
        created_by=created_by,
    )


def process_inbound_for_return(
    db: Session,
    order_id: int,
    return_ref: str,
    *,
    created_by: str | None = None,
) -> OrderStockResult:
    """Remise en stock des articles d'une commande retournée."""
    return _process_order_lines(
        db,
        order_id,
        kind=MovementType.inbound,
        invoice_id=None,
        reference=f"RETURN-{return_ref}",
        notes_for=lambda number, title: f"Return {return_ref} - order {number}, product: {title}",
        error_verb="restock",
        created_by=created_by,
    )
