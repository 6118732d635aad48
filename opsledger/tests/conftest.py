import os
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from opsledger.app.db.base import Base
from opsledger.app.db.models import models_v1  # noqa: F401  (tables)
from opsledger.app.db.models.models_v1 import (
    ChannelListing,
    Company,
    InvoiceSeries,
    LineItem,
    Order,
    Store,
)
from opsledger.app.db.session import SessionLocal, make_engine
from opsledger.services.catalog import set_item_components, upsert_item


@pytest.fixture(scope="session")
def engine(tmp_path_factory):
    """
    TEST_DATABASE_URL (Postgres) si défini, sinon un fichier SQLite temporaire.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        url = f"sqlite:///{tmp_path_factory.mktemp('db') / 'opsledger_test.db'}"

    engine = make_engine(url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    """
    Session DB isolée par test.

    Transaction englobante sur la connexion ; la session la rejoint en mode
    SAVEPOINT, donc les commit()/rollback() des services restent dans le test.
    TOUT est rollback à la fin du test.
    """
    connection = engine.connect()
    transaction = connection.begin()

    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


# ---------- FABRIQUES ----------
@pytest.fixture
def make_item(db_session):
    def _make(sku, *, stock=0, name=None, cost_price=0, reorder_threshold=5, listing=False):
        item = upsert_item(
            db_session,
            sku=sku,
            name=name or f"Item {sku}",
            cost_price=cost_price,
            reorder_threshold=reorder_threshold,
            opening_balance=stock,
            created_by="tests",
        )
        if listing:
            db_session.add(ChannelListing(sku=sku, title=item.name, stock=Decimal(stock)))
            db_session.commit()
        return item

    return _make


@pytest.fixture
def make_composite(db_session, make_item):
    def _make(sku, components):
        item = make_item(sku)
        return set_item_components(db_session, item.id, components)

    return _make


@pytest.fixture
def company(db_session):
    company = Company(
        code="MAIN",
        name="Main Company SRL",
        cif="RO123456",
        is_primary=True,
        default_vat_rate=Decimal(19),
        provider_api_key="key-main",
    )
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture
def make_series(db_session):
    def _make(prefix="MC", *, company=None, current_number=1, start_number=1, padding=6, is_default=True, is_active=True):
        series = InvoiceSeries(
            name=f"Series {prefix}",
            prefix=prefix,
            start_number=start_number,
            current_number=current_number,
            number_padding=padding,
            is_default=is_default,
            is_active=is_active,
            company_id=company.id if company else None,
        )
        db_session.add(series)
        db_session.commit()
        return series

    return _make


@pytest.fixture
def store(db_session, company):
    store = Store(name="Online store", company_id=company.id)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture
def make_order(db_session):
    counter = {"n": 0}

    def _make(lines, *, store=None, billing_company=None, financial_status="paid", total_price=None, **fields):
        counter["n"] += 1
        order = Order(
            order_number=fields.pop("order_number", f"#10{counter['n']:02d}"),
            store_id=store.id if store else None,
            billing_company_id=billing_company.id if billing_company else None,
            financial_status=financial_status,
            customer_first_name="Ana",
            customer_last_name="Pop",
            customer_email="ana@example.com",
            shipping_address1="Str. Lunga 1",
            shipping_city="Brasov",
            shipping_province="Brasov",
            shipping_country="Romania",
            **fields,
        )
        total = Decimal(0)
        for sku, quantity, *rest in lines:
            price = Decimal(str(rest[0])) if rest else Decimal("10.00")
            total += price * quantity
            order.line_items.append(LineItem(sku=sku, title=f"Product {sku}", quantity=quantity, price=price))
        order.total_price = total if total_price is None else Decimal(str(total_price))
        db_session.add(order)
        db_session.commit()
        return order

    return _make
