from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from opsledger.app.db.base import utcnow
from opsledger.app.db.models.models_v1 import AuditLog, Company, Invoice, InvoiceSeries, Order, StockTransfer
from opsledger.app.db.models.core_types import InvoiceStatus, OrderStatus, TransferStatus
from opsledger.app.schemas.invoicing import (
    AllocatedNumber,
    ProviderCancelResult,
    ProviderInvoiceResult,
    ProviderPdfResult,
)
from opsledger.services import activity, invoicing
from opsledger.services.invoicing import (
    build_invoice_payload,
    can_issue_invoice,
    cancel_invoice,
    get_invoice_pdf,
    issue_invoice_for_order,
    issue_invoices_for_orders,
)


class FakeProvider:
    name = "fake"

    def __init__(self, *, fail_with=None, error_code=None, raise_exc=None, pdf=b"%PDF-1.4 fake"):
        self.fail_with = fail_with
        self.error_code = error_code
        self.raise_exc = raise_exc
        self.pdf = pdf
        self.payloads = []
        self.cancelled = []

    def create_invoice(self, payload):
        self.payloads.append(payload)
        if self.raise_exc:
            raise self.raise_exc
        if self.fail_with:
            return ProviderInvoiceResult(success=False, error=self.fail_with, error_code=self.error_code)
        return ProviderInvoiceResult(
            success=True,
            invoice_id=f"EXT-{payload.series}-{payload.number}",
            invoice_number=str(payload.number),
            invoice_series=payload.series,
        )

    def get_invoice_pdf(self, invoice_id):
        if self.pdf is None:
            return ProviderPdfResult(success=False, error="not ready")
        return ProviderPdfResult(success=True, pdf_bytes=self.pdf)

    def cancel_invoice(self, invoice_id):
        self.cancelled.append(invoice_id)
        return ProviderCancelResult(success=True)


def _factory(provider):
    return lambda company: provider


def _counter(db, series_id):
    return db.get(InvoiceSeries, series_id, populate_existing=True).current_number


@pytest.fixture
def billing(db_session, company, store, make_series):
    series = make_series("MC", company=company, current_number=50)
    return company, store, series


def test_issue_invoice_happy_path(db_session, billing, make_order):
    company, store, series = billing
    order = make_order([("MUG", 2, "59.50")], store=store)
    provider = FakeProvider()

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(provider))

    assert result.success, result.error
    assert (result.invoice_series, result.invoice_number) == ("MC", "50")
    assert result.invoice_key == "EXT-MC-50"
    assert result.company_id == company.id
    assert _counter(db_session, series.id) == 51

    invoice = db_session.scalar(select(Invoice).where(Invoice.order_id == order.id))
    assert invoice.status == InvoiceStatus.issued
    assert invoice.invoice_number == 50
    assert invoice.series_prefix == "MC"
    assert invoice.provider == "fake"
    assert invoice.pdf_data == b"%PDF-1.4 fake"
    assert invoice.payment_status == "paid"
    assert invoice.paid_amount == Decimal("119.00")

    order = db_session.get(Order, order.id, populate_existing=True)
    assert order.status == OrderStatus.invoiced
    assert order.billing_company_id == company.id
    assert order.intercompany_status is None

    audit = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == str(order.id)))
    assert audit.action == "invoice.issued"


def test_provider_failure_rolls_number_back(db_session, billing, make_order):
    _company, store, series = billing
    order = make_order([("MUG", 1)], store=store)

    result = issue_invoice_for_order(
        db_session,
        order.id,
        provider_factory=_factory(FakeProvider(fail_with="Client tax code invalid", error_code="422")),
    )

    assert not result.success
    assert result.error == "Client tax code invalid"
    assert result.error_code == "PROVIDER_422"
    assert _counter(db_session, series.id) == 50
    assert db_session.scalar(select(Invoice).where(Invoice.order_id == order.id)) is None

    # le numéro 50 est réattribué au prochain essai
    retry = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))
    assert retry.invoice_number == "50"


def test_provider_exception_is_a_provider_failure(db_session, billing, make_order):
    _company, store, series = billing
    order = make_order([("MUG", 1)], store=store)

    result = issue_invoice_for_order(
        db_session,
        order.id,
        provider_factory=_factory(FakeProvider(raise_exc=ConnectionError("timed out"))),
    )

    assert not result.success
    assert result.error_code == "PROVIDER_ERROR"
    assert "timed out" in result.error
    assert _counter(db_session, series.id) == 50


def test_client_construction_failure_rolls_back(db_session, billing, make_order):
    _company, store, series = billing
    order = make_order([("MUG", 1)], store=store)

    result = issue_invoice_for_order(db_session, order.id, provider_factory=lambda company: None)

    assert result.error_code == "CLIENT_ERROR"
    assert _counter(db_session, series.id) == 50


def test_already_issued_allocates_nothing(db_session, billing, make_order):
    _company, store, series = billing
    order = make_order([("MUG", 1)], store=store)
    issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))
    provider = FakeProvider()

    again = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(provider))

    assert not again.success
    assert again.error_code == "ALREADY_ISSUED"
    assert "MC000050" in again.error
    assert provider.payloads == []
    assert _counter(db_session, series.id) == 51


@pytest.mark.parametrize(
    "setup, code",
    [
        ("pending_transfer", "TRANSFER_PENDING"),
        ("no_company", "NO_COMPANY"),
        ("no_credentials", "NO_CREDENTIALS"),
        ("no_series", "NO_SERIES"),
    ],
)
def test_guards_return_typed_errors(db_session, company, store, make_series, make_order, setup, code):
    if setup != "no_series":
        make_series("MC", company=company)

    fields = {}
    order_store = store
    if setup == "pending_transfer":
        transfer = StockTransfer(reference="TR-1", status=TransferStatus.in_transit)
        db_session.add(transfer)
        db_session.commit()
        fields["required_transfer_id"] = transfer.id
    elif setup == "no_company":
        order_store = None
    elif setup == "no_credentials":
        company.provider_api_key = None
        db_session.commit()

    order = make_order([("MUG", 1)], store=order_store, **fields)
    provider = FakeProvider()

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(provider))

    assert not result.success
    assert result.error_code == code
    assert result.error
    assert provider.payloads == []
    assert can_issue_invoice(db_session, order.id).can_issue is False


def test_missing_order(db_session):
    result = issue_invoice_for_order(db_session, 424_242, provider_factory=_factory(FakeProvider()))

    assert result.error_code == "ORDER_NOT_FOUND"


def test_inactive_store_series_is_not_used(db_session, company, store, make_series, make_order):
    series = make_series("MC", company=company)
    order = make_order([("MUG", 1)], store=store, order_number="#NN1")
    # série du magasin inactive, et c'est la seule de la firme
    store.invoice_series_id = series.id
    series.is_active = False
    db_session.commit()

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))

    assert result.error_code == "NO_SERIES"


def test_billing_company_override_and_intercompany(db_session, billing, make_order, make_series):
    _company, store, _series = billing
    secondary = Company(code="SEC", name="Second SRL", cif="RO999", reg_com="J08/1/2020", provider_api_key="key-sec")
    db_session.add(secondary)
    db_session.commit()
    make_series("SC", company=secondary, current_number=7)
    order = make_order([("MUG", 1)], store=store, billing_company=secondary)
    provider = FakeProvider()

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(provider))

    assert result.success
    assert result.company_name == "Second SRL"
    assert (result.invoice_series, result.invoice_number) == ("SC", "7")
    payload = provider.payloads[0]
    assert payload.client_type == "company"
    assert payload.client_tax_code == "RO999"
    order = db_session.get(Order, order.id, populate_existing=True)
    assert order.intercompany_status == "pending"


def test_payload_vat_math():
    company = Company(code="X", name="X SRL", default_vat_rate=Decimal("19.00"))
    order = SimpleNamespace(
        order_number="#5001",
        currency="RON",
        customer_first_name="Ion",
        customer_last_name="Popa",
        customer_email=None,
        customer_phone=None,
        shipping_address1=None,
        shipping_address2=None,
        shipping_city=None,
        shipping_province=None,
        shipping_country=None,
        billing_company=None,
        line_items=[
            SimpleNamespace(title="Mug", variant_title="White", sku="MUG", quantity=2, price=Decimal("119.00")),
        ],
    )
    allocated = AllocatedNumber(series_id=1, prefix="MC", number=12, formatted="MC000012", padding=6)

    payload = build_invoice_payload(order, company, allocated)

    assert payload.vat_rate == "19%"
    assert payload.series == "MC" and payload.number == 12
    assert payload.client_name == "Ion Popa"
    assert payload.client_type == "individual"
    assert payload.client_address == "Undefined"
    assert payload.notes == "Online order: #5001"
    line = payload.lines[0]
    assert line.name == "Mug - White"
    assert line.unit_price_net == Decimal("100.00")
    assert line.vat_amount == Decimal("38.00")


def test_batch_is_sequential_and_independent(db_session, billing, make_order):
    _company, store, _series = billing
    ok = make_order([("MUG", 1)], store=store)
    no_store = make_order([("MUG", 1)])
    ok_too = make_order([("MUG", 1)], store=store)

    batch = issue_invoices_for_orders(
        db_session,
        [ok.id, no_store.id, ok_too.id],
        provider_factory=_factory(FakeProvider()),
        pause_seconds=0,
    )

    assert (batch.issued, batch.failed) == (2, 1)
    assert [r.invoice_number for r in batch.results] == ["50", None, "51"]
    assert batch.results[1].error_code == "NO_COMPANY"


def test_activity_failure_does_not_fail_issuance(db_session, billing, make_order, monkeypatch):
    _company, store, _series = billing
    order = make_order([("MUG", 1)], store=store)

    def broken(*args, **kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(activity, "log_activity", broken)

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))

    assert result.success


def test_pdf_is_served_from_storage_then_provider(db_session, billing, make_order):
    _company, store, _series = billing
    order = make_order([("MUG", 1)], store=store)
    issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider(pdf=None)))

    provider = FakeProvider(pdf=b"%PDF late")
    first = get_invoice_pdf(db_session, order.id, provider_factory=_factory(provider))
    cached = get_invoice_pdf(db_session, order.id, provider_factory=_factory(FakeProvider(pdf=None)))

    assert first.success and first.pdf_bytes == b"%PDF late"
    assert cached.pdf_bytes == b"%PDF late"
    assert get_invoice_pdf(db_session, 777_777).error == "Invoice was not found"


def test_cancel_invoice(db_session, billing, make_order):
    _company, store, _series = billing
    order = make_order([("MUG", 1)], store=store)
    issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))
    provider = FakeProvider()

    result = cancel_invoice(db_session, order.id, provider_factory=_factory(provider))
    again = cancel_invoice(db_session, order.id, provider_factory=_factory(provider))

    assert result.success
    assert provider.cancelled == ["EXT-MC-50"]
    assert not again.success and again.error == "The invoice is already cancelled"

    invoice = db_session.scalar(select(Invoice).where(Invoice.order_id == order.id))
    assert invoice.status == InvoiceStatus.cancelled
    assert invoice.cancel_reason == "Cancelled manually"
    assert db_session.get(Order, order.id).status == OrderStatus.invoice_pending


def test_company_default_series_wins_over_store_series(db_session, company, store, make_series, make_order):
    default = make_series("DEF", company=company, current_number=10, is_default=True)
    extra = make_series("EXTRA", company=company, current_number=500, is_default=False)
    store.invoice_series_id = extra.id
    db_session.commit()
    order = make_order([("MUG", 1)], store=store)

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))

    assert result.success, result.error
    assert (result.invoice_series, result.invoice_number) == ("DEF", "10")
    assert _counter(db_session, default.id) == 11
    assert _counter(db_session, extra.id) == 500


def test_unowned_store_series_is_not_used_for_billing_company(db_session, billing, make_order, make_series):
    _company, store, _series = billing
    secondary = Company(code="SEC", name="Second SRL", provider_api_key="key-sec")
    db_session.add(secondary)
    db_session.commit()
    make_series("SECDEF", company=secondary, current_number=3)
    shared = make_series("GLOBAL", current_number=900, is_default=False)
    store.invoice_series_id = shared.id
    db_session.commit()
    order = make_order([("MUG", 1)], store=store, billing_company=secondary)

    result = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))

    assert result.success, result.error
    assert (result.invoice_series, result.invoice_number) == ("SECDEF", "3")
    assert _counter(db_session, shared.id) == 900


def test_order_removed_after_provider_confirmation_is_a_save_error(db_session, billing, make_order, monkeypatch):
    _company, store, series = billing
    order_id = make_order([("MUG", 1)], store=store).id

    def order_removed(provider, invoice_key):
        db_session.delete(db_session.get(Order, order_id))
        db_session.commit()
        return None

    monkeypatch.setattr(invoicing, "_fetch_pdf", order_removed)

    result = issue_invoice_for_order(db_session, order_id, provider_factory=_factory(FakeProvider()))

    assert not result.success
    assert result.error_code == "SAVE_ERROR"
    assert result.invoice_key == "EXT-MC-50"
    assert "MC000050" in result.error
    # le fournisseur a émis : le numéro reste consommé
    assert _counter(db_session, series.id) == 51
    assert db_session.scalar(select(Invoice).where(Invoice.order_id == order_id)) is None


def test_provider_failure_marks_pending_invoice_failed(db_session, billing, make_order):
    _company, store, series = billing
    order = make_order([("MUG", 1)], store=store)
    db_session.add(Invoice(order_id=order.id, status=InvoiceStatus.pending))
    db_session.commit()

    failed = issue_invoice_for_order(
        db_session,
        order.id,
        provider_factory=_factory(FakeProvider(fail_with="Provider under maintenance")),
    )

    invoice = db_session.scalar(select(Invoice).where(Invoice.order_id == order.id))
    db_session.refresh(invoice)
    assert not failed.success
    assert invoice.status == InvoiceStatus.failed
    assert invoice.error_message == "Provider under maintenance"
    assert invoice.invoice_number is None
    assert _counter(db_session, series.id) == 50

    retry = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))

    db_session.refresh(invoice)
    assert retry.success
    assert invoice.status == InvoiceStatus.issued
    assert invoice.error_message is None
    assert invoice.invoice_number == 50


def test_soft_deleted_invoice_is_ignored(db_session, billing, make_order):
    _company, store, _series = billing
    order = make_order([("MUG", 1)], store=store)
    issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))
    invoice = db_session.scalar(select(Invoice).where(Invoice.order_id == order.id))
    invoice.deleted_at = utcnow()
    db_session.commit()

    assert get_invoice_pdf(db_session, order.id).error == "Invoice was not found"
    assert cancel_invoice(db_session, order.id).error == "Invoice was not found"
    assert can_issue_invoice(db_session, order.id).can_issue

    again = issue_invoice_for_order(db_session, order.id, provider_factory=_factory(FakeProvider()))

    db_session.refresh(invoice)
    assert again.success
    assert again.invoice_number == "51"
    assert invoice.deleted_at is None
    assert invoice.invoice_number == 51
