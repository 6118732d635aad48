from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from opsledger.app.db.session import SessionLocal
from opsledger.app.db.models.models_v1 import ChannelListing, Company, InvoiceSeries, Store
from opsledger.services.catalog import find_item_by_sku, set_item_components, upsert_item

logger = logging.getLogger(__name__)

DEMO_ITEMS = [
    # sku, nom, stock d'ouverture, prix de revient
    ("MUG-WHITE", "White mug", Decimal(40), Decimal("8.50")),
    ("SPOON-STEEL", "Steel spoon", Decimal(60), Decimal("2.10")),
]


def seed_reference_data(db: Session) -> None:
    # 1) Firme principale
    company = db.scalar(select(Company).where(Company.code == "MAIN"))
    if not company:
        company = Company(code="MAIN", name="Main Company SRL", is_primary=True, default_vat_rate=Decimal(19))
        db.add(company)
        db.commit()

    # 2) Série par défaut
    series = db.scalar(select(InvoiceSeries).where(InvoiceSeries.company_id == company.id))
    if not series:
        series = InvoiceSeries(
            name="Main series",
            prefix="MC",
            start_number=1,
            current_number=1,
            is_default=True,
            company_id=company.id,
        )
        db.add(series)
        db.commit()

    # 3) Magazin en ligne
    store = db.scalar(select(Store).where(Store.name == "Online store"))
    if not store:
        db.add(Store(name="Online store", company_id=company.id))
        db.commit()

    # 4) Articles de démo (stock d'ouverture via le ledger) + un coffret composé
    for sku, name, opening, cost in DEMO_ITEMS:
        if find_item_by_sku(db, sku) is None:
            upsert_item(db, sku=sku, name=name, cost_price=cost, opening_balance=opening, created_by="seed")
            db.add(ChannelListing(sku=sku, title=name, stock=opening))
            db.commit()

    if find_item_by_sku(db, "GIFT-SET") is None:
        gift = upsert_item(db, sku="GIFT-SET", name="Mug and spoons gift set", created_by="seed")
        set_item_components(db, gift.id, [("MUG-WHITE", 1), ("SPOON-STEEL", 2)])

    logger.info("Seed OK: company=MAIN, series=MC, store=Online store")


def run_seed():
    db = SessionLocal()
    try:
        seed_reference_data(db)
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_seed()
