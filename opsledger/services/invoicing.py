"""
Émission des factures de commandes auprès du fournisseur de facturation.

Flux :
    commande -> contrôles -> firme -> série -> numéro (alloué)
    -> appel fournisseur -> facture enregistrée -> commande "invoiced"

Le numéro est alloué AVANT l'appel fournisseur (le fournisseur exige le
numéro). Un échec fournisseur est compensé par `rollback_allocation` ;
un crash entre les deux laisse un trou, jamais un doublon.

Aucune exception ne sort de ce module : tout échec devient un résultat
typé avec un message affichable et un `error_code` stable.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from opsledger.app.core.config import settings
from opsledger.app.db.base import utcnow
from opsledger.app.db.models.models_v1 import Company, Invoice, InvoiceSeries, Order, Store
from opsledger.app.db.models.core_types import (
    InvoiceStatus,
    OrderStatus,
    PaymentStatus,
    TransferStatus,
)
from opsledger.app.schemas.invoicing import (
    AllocatedNumber,
    BatchIssueResult,
    CancelInvoiceResult,
    CanIssueResult,
    InvoicePdfResult,
    IssueInvoiceResult,
    ProviderInvoiceLine,
    ProviderInvoicePayload,
    ProviderInvoiceResult,
)
from opsledger.services import activity
from opsledger.services.errors import (
    ConfigurationMissing,
    InvoiceAlreadyIssued,
    LedgerError,
    OrderNotFound,
    PrerequisiteNotMet,
    ProviderFailure,
    SequenceInactive,
    SequenceNotFound,
)
from opsledger.services.invoice_series import (
    allocate_next,
    format_invoice_number,
    get_series_for_company,
    rollback_allocation,
)
from opsledger.services.provider import InvoicingProvider, client_for_company, has_provider_credentials

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Company], InvoicingProvider]

CENT = Decimal("0.01")


def _load_order(db: Session, order_id: int) -> Order:
    order = (
        db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.line_items),
                joinedload(Order.store).joinedload(Store.company),
                joinedload(Order.invoice),
                joinedload(Order.billing_company),
                joinedload(Order.required_transfer),
            )
            .execution_options(populate_existing=True)
        )
        .unique()
        .scalar_one_or_none()
    )
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _existing_invoice_label(invoice: Invoice) -> str:
    if invoice.series_prefix and invoice.invoice_number is not None:
        padding = invoice.invoice_series.number_padding if invoice.invoice_series else settings.default_number_padding
        return format_invoice_number(invoice.series_prefix, invoice.invoice_number, padding)
    return invoice.external_id or "unknown"


def _live_invoice(order: Order) -> Invoice | None:
    invoice = order.invoice
    if invoice is None or invoice.deleted_at is not None:
        return None
    return invoice


def _resolve_billing(db: Session, order: Order) -> tuple[Company, InvoiceSeries]:
    """Contrôles préalables, dans l'ordre. Lève une LedgerError au premier échec."""
    invoice = _live_invoice(order)
    if invoice is not None and invoice.status == InvoiceStatus.issued:
        raise InvoiceAlreadyIssued(_existing_invoice_label(invoice))

    if order.required_transfer is not None and order.required_transfer.status != TransferStatus.completed:
        raise PrerequisiteNotMet(
            "The stock transfer has not been completed. The invoice cannot be issued until the transfer is closed.",
            code="TRANSFER_PENDING",
        )

    # priorité : firme de facturation explicite, puis firme du magazin
    company = order.billing_company or (order.store.company if order.store else None)
    if company is None:
        raise ConfigurationMissing(
            "The order has no billing company. Configure the store's company or set a billing company.",
            code="NO_COMPANY",
        )

    if not has_provider_credentials(company):
        raise ConfigurationMissing(
            f'Invoicing provider credentials are not configured for company "{company.name}".',
            code="NO_CREDENTIALS",
        )

    # série par défaut active de la firme, sinon sa première série active
    series = get_series_for_company(db, company.id)
    if series is None:
        raise ConfigurationMissing(
            f'No invoice series is configured for company "{company.name}".',
            code="NO_SERIES",
        )

    return company, series


def _vat_rate(company: Company) -> Decimal:
    rate = company.default_vat_rate
    if rate is None or Decimal(rate) <= 0:
        return Decimal(settings.default_vat_rate)
    return Decimal(rate)


def _rate_label(rate: Decimal) -> str:
    return f"{rate.normalize():f}%"


def build_invoice_payload(order: Order, company: Company, allocated: AllocatedNumber) -> ProviderInvoicePayload:
    """
    Payload fournisseur. Les prix des lignes sont TTC : le HT et la TVA
    sont recalculés ligne à ligne (arrondi au centime, half-up).
    """
    vat_rate = _vat_rate(company)
    label = _rate_label(vat_rate)
    divisor = Decimal(1) + vat_rate / Decimal(100)

    lines = []
    for line in order.line_items:
        gross = Decimal(line.price).quantize(CENT, rounding=ROUND_HALF_UP)
        net = (gross / divisor).quantize(CENT, rounding=ROUND_HALF_UP)
        name = f"{line.title} - {line.variant_title}" if line.variant_title else line.title
        lines.append(
            ProviderInvoiceLine(
                name=name,
                quantity=line.quantity,
                unit_price_net=net,
                unit_price_gross=gross,
                vat_amount=((gross - net) * line.quantity).quantize(CENT, rounding=ROUND_HALF_UP),
                vat_rate=label,
                sku=line.sku,
            )
        )

    client = order.billing_company
    if client is not None:
        client_name = client.name
    else:
        client_name = " ".join(p for p in (order.customer_first_name, order.customer_last_name) if p) or "Client"

    address = ", ".join(p for p in (order.shipping_address1, order.shipping_address2) if p)

    return ProviderInvoicePayload(
        issue_date=utcnow().date().isoformat(),
        series=allocated.provider_series_code or allocated.prefix,
        number=allocated.number,
        currency=order.currency or settings.default_currency,
        vat_rate=label,
        client_name=client_name,
        client_type="company" if client is not None else "individual",
        client_tax_code=client.cif if client is not None else None,
        client_reg_number=client.reg_com if client is not None else None,
        client_address=address or "Undefined",
        client_province=order.shipping_province or "",
        client_city=order.shipping_city or "",
        client_country=order.shipping_country or settings.default_country,
        client_email=order.customer_email,
        client_phone=order.customer_phone,
        notes=f"Online order: {order.order_number}",
        lines=lines,
    )


def _compensate(db: Session, allocated: AllocatedNumber) -> None:
    db.rollback()
    try:
        rollback_allocation(db, allocated.series_id, allocated.number)
    except SQLAlchemyError:
        logger.exception("Could not roll back invoice number %s; it is left as a gap", allocated.formatted)


def _call_provider(provider: InvoicingProvider, payload: ProviderInvoicePayload) -> ProviderInvoiceResult:
    try:
        result = provider.create_invoice(payload)
    except Exception as exc:
        logger.warning("Invoice provider call raised", exc_info=True)
        raise ProviderFailure(f"Invoice provider error: {exc}") from exc

    if not result.success:
        raise ProviderFailure(result.error or "The invoice provider rejected the invoice", result.error_code)
    return result


def _fetch_pdf(provider: InvoicingProvider, invoice_key: str | None) -> bytes | None:
    """Best effort : l'absence de PDF ne bloque jamais l'émission."""
    if not invoice_key:
        return None
    try:
        pdf = provider.get_invoice_pdf(invoice_key)
    except Exception:
        logger.warning("Could not download PDF for invoice %s", invoice_key, exc_info=True)
        return None
    if not pdf.success:
        logger.warning("PDF not available for invoice %s: %s", invoice_key, pdf.error)
        return None
    return pdf.pdf_bytes


def _mark_failed(db: Session, order_id: int, message: str) -> None:
    """
    Trace l'échec fournisseur sur la facture déjà présente (pending / failed).
    Aucune ligne n'est créée : sans facture existante, rien à écrire.
    """
    try:
        invoice = db.scalar(
            select(Invoice).where(
                Invoice.order_id == order_id,
                Invoice.deleted_at.is_(None),
                Invoice.status.in_((InvoiceStatus.pending, InvoiceStatus.failed)),
            )
        )
        if invoice is None:
            return
        invoice.status = InvoiceStatus.failed
        invoice.error_message = message
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Could not record the failure on the invoice of order %s", order_id, exc_info=True)


def _save_invoice(
    db: Session,
    *,
    order_id: int,
    company: Company,
    allocated: AllocatedNumber,
    provider_name: str,
    result: ProviderInvoiceResult,
    pdf_bytes: bytes | None,
) -> None:
    """Upsert de la facture par order_id + statut de la commande, une transaction."""
    order = db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFound(order_id)

    invoice = db.scalar(select(Invoice).where(Invoice.order_id == order_id))
    if invoice is None:
        invoice = Invoice(order_id=order_id)
        db.add(invoice)

    now = utcnow()
    is_paid = order.financial_status == "paid"

    invoice.company_id = company.id
    invoice.invoice_series_id = allocated.series_id
    invoice.provider = provider_name
    invoice.series_prefix = allocated.prefix
    invoice.invoice_number = allocated.number
    invoice.external_id = result.invoice_id
    invoice.status = InvoiceStatus.issued
    invoice.pdf_url = result.pdf_url
    invoice.pdf_data = pdf_bytes
    invoice.payment_status = (PaymentStatus.paid if is_paid else PaymentStatus.unpaid).value
    invoice.paid_amount = order.total_price if is_paid else Decimal(0)
    invoice.paid_at = now if is_paid else None
    invoice.issued_at = now
    invoice.error_message = None
    invoice.cancelled_at = None
    invoice.cancel_reason = None
    invoice.deleted_at = None

    order.status = OrderStatus.invoiced
    order.billing_company_id = company.id
    if not company.is_primary:
        # firme secondaire -> décompte intercompany à faire
        order.intercompany_status = "pending"

    db.commit()


def issue_invoice_for_order(
    db: Session,
    order_id: int,
    *,
    provider_factory: ProviderFactory | None = None,
) -> IssueInvoiceResult:
    provider_factory = provider_factory or client_for_company
    allocated: AllocatedNumber | None = None
    company_id = company_name = None

    try:
        order = _load_order(db, order_id)
        company, series = _resolve_billing(db, order)
        company_id, company_name = company.id, company.name
        order_number = order.order_number

        try:
            allocated = allocate_next(db, series.id)
        except (SequenceNotFound, SequenceInactive) as exc:
            raise ConfigurationMissing(
                f"Could not get the next invoice number: {exc.message}",
                code="NO_NUMBER",
            ) from exc

        logger.info(
            "Issuing invoice %s for order %s (company %s)",
            allocated.formatted,
            order_number,
            company_name,
        )

        try:
            provider = provider_factory(company)
        except Exception as exc:
            raise ConfigurationMissing(
                f"Could not create the invoicing provider client: {exc}",
                code="CLIENT_ERROR",
            ) from exc
        if provider is None:
            raise ConfigurationMissing(
                "Could not create the invoicing provider client. Check the credentials.",
                code="CLIENT_ERROR",
            )

        payload = build_invoice_payload(order, company, allocated)
        result = _call_provider(provider, payload)

    except ProviderFailure as exc:
        if allocated is not None:
            _compensate(db, allocated)
        logger.warning("Invoice provider failed for order %s: %s", order_id, exc.message)
        _mark_failed(db, order_id, exc.message)
        return IssueInvoiceResult(
            success=False,
            error=exc.message,
            error_code=f"PROVIDER_{exc.provider_code}" if exc.provider_code else exc.code,
            company_id=company_id,
            company_name=company_name,
        )
    except LedgerError as exc:
        if allocated is not None:
            _compensate(db, allocated)
        return IssueInvoiceResult(
            success=False,
            error=exc.message,
            error_code=exc.code,
            company_id=company_id,
            company_name=company_name,
        )
    except Exception as exc:
        logger.exception("Unexpected error while issuing invoice for order %s", order_id)
        db.rollback()
        if allocated is not None:
            _compensate(db, allocated)
        return IssueInvoiceResult(
            success=False,
            error=f"Unexpected error while issuing the invoice: {exc}",
            error_code="UNKNOWN_ERROR",
            company_id=company_id,
            company_name=company_name,
        )

    # à partir d'ici le fournisseur a confirmé : plus de compensation possible
    invoice_key = result.invoice_id
    pdf_bytes = _fetch_pdf(provider, invoice_key)

    try:
        _save_invoice(
            db,
            order_id=order_id,
            company=company,
            allocated=allocated,
            provider_name=getattr(provider, "name", "provider"),
            result=result,
            pdf_bytes=pdf_bytes,
        )
    except (SQLAlchemyError, OrderNotFound) as exc:
        db.rollback()
        logger.exception("Invoice %s issued by the provider but not saved", allocated.formatted)
        return IssueInvoiceResult(
            success=False,
            invoice_number=str(allocated.number),
            invoice_series=allocated.prefix,
            invoice_key=invoice_key,
            company_id=company_id,
            company_name=company_name,
            error=f"Invoice {allocated.formatted} was issued by the provider but could not be saved: {exc}",
            error_code="SAVE_ERROR",
        )

    activity.log_invoice_issued(
        db,
        order_id=order_id,
        order_number=order_number,
        invoice_number=allocated.formatted,
        company_name=company_name,
    )

    logger.info("Invoice %s issued for order %s", allocated.formatted, order_number)
    return IssueInvoiceResult(
        success=True,
        invoice_number=str(allocated.number),
        invoice_series=allocated.prefix,
        invoice_key=invoice_key,
        company_id=company_id,
        company_name=company_name,
    )


def issue_invoices_for_orders(
    db: Session,
    order_ids: Iterable[int],
    *,
    provider_factory: ProviderFactory | None = None,
    pause_seconds: float | None = None,
) -> BatchIssueResult:
    """Séquentiel, chaque commande indépendante, pas de retry."""
    pause = settings.invoice_batch_pause if pause_seconds is None else pause_seconds
    batch = BatchIssueResult()

    for position, order_id in enumerate(order_ids):
        if position and pause > 0:
            # le fournisseur limite le débit
            time.sleep(pause)

        result = issue_invoice_for_order(db, order_id, provider_factory=provider_factory)
        batch.results.append(result)
        if result.success:
            batch.issued += 1
        else:
            batch.failed += 1

    logger.info("Invoice batch: %s issued, %s failed", batch.issued, batch.failed)
    return batch


def can_issue_invoice(db: Session, order_id: int) -> CanIssueResult:
    """Mêmes contrôles que l'émission, sans aucune écriture."""
    try:
        order = _load_order(db, order_id)
        company, _series = _resolve_billing(db, order)
    except LedgerError as exc:
        return CanIssueResult(can_issue=False, reason=exc.message)

    return CanIssueResult(can_issue=True, company_id=company.id, company_name=company.name)


def _find_invoice(db: Session, order_id: int) -> Invoice | None:
    return db.scalar(
        select(Invoice)
        .where(Invoice.order_id == order_id, Invoice.deleted_at.is_(None))
        .options(joinedload(Invoice.company))
    )


def get_invoice_pdf(
    db: Session,
    order_id: int,
    *,
    provider_factory: ProviderFactory | None = None,
) -> InvoicePdfResult:
    """PDF stocké, sinon URL stockée, sinon téléchargé chez le fournisseur et mis en cache."""
    invoice = _find_invoice(db, order_id)
    if invoice is None:
        return InvoicePdfResult(success=False, error="Invoice was not found")

    if invoice.pdf_data:
        return InvoicePdfResult(success=True, pdf_bytes=invoice.pdf_data)
    if invoice.pdf_url:
        return InvoicePdfResult(success=True, pdf_url=invoice.pdf_url)

    if invoice.external_id and invoice.company is not None:
        try:
            provider = (provider_factory or client_for_company)(invoice.company)
            pdf = provider.get_invoice_pdf(invoice.external_id)
        except Exception as exc:
            logger.warning("PDF fetch failed for invoice %s", invoice.external_id, exc_info=True)
            return InvoicePdfResult(success=False, error=str(exc))

        if pdf.success and pdf.pdf_bytes:
            invoice.pdf_data = pdf.pdf_bytes
            db.commit()
            return InvoicePdfResult(success=True, pdf_bytes=pdf.pdf_bytes)
        if pdf.success and pdf.pdf_url:
            invoice.pdf_url = pdf.pdf_url
            db.commit()
            return InvoicePdfResult(success=True, pdf_url=pdf.pdf_url)

    return InvoicePdfResult(success=False, error="The PDF is not available")


def cancel_invoice(
    db: Session,
    order_id: int,
    reason: str | None = None,
    *,
    provider_factory: ProviderFactory | None = None,
) -> CancelInvoiceResult:
    invoice = _find_invoice(db, order_id)
    if invoice is None:
        return CancelInvoiceResult(success=False, error="Invoice was not found")
    if invoice.status == InvoiceStatus.cancelled:
        return CancelInvoiceResult(success=False, error="The invoice is already cancelled")

    if invoice.external_id and invoice.company is not None and has_provider_credentials(invoice.company):
        try:
            provider = (provider_factory or client_for_company)(invoice.company)
            cancelled = provider.cancel_invoice(invoice.external_id)
            if not cancelled.success:
                logger.warning("Provider did not cancel invoice %s: %s", invoice.external_id, cancelled.error)
        except Exception:
            logger.warning("Provider cancel failed for invoice %s", invoice.external_id, exc_info=True)

    try:
        invoice.status = InvoiceStatus.cancelled
        invoice.cancelled_at = utcnow()
        invoice.cancel_reason = reason or "Cancelled manually"

        order = db.get(Order, order_id)
        if order is not None:
            order.status = OrderStatus.invoice_pending
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Could not cancel invoice for order %s", order_id)
        return CancelInvoiceResult(success=False, error=f"Could not cancel the invoice: {exc}")

    logger.info("Invoice for order %s cancelled", order_id)
    return CancelInvoiceResult(success=True)
