from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


# ---------- Numérotation ----------
class AllocatedNumber(BaseModel):
    series_id: int
    prefix: str
    number: int
    formatted: str
    padding: int
    provider_series_code: str | None = None
    correction_applied: bool = False
    correction_message: str | None = None


class NumberPreview(BaseModel):
    series_id: int
    prefix: str
    number: int
    formatted: str
    correction_pending: bool = False


class SeriesValidation(BaseModel):
    valid: bool
    error: str | None = None


# ---------- Émission ----------
class IssueInvoiceResult(BaseModel):
    success: bool
    invoice_number: str | None = None
    invoice_series: str | None = None
    invoice_key: str | None = None  # référence chez le fournisseur
    company_id: int | None = None
    company_name: str | None = None
    error: str | None = None
    error_code: str | None = None


class BatchIssueResult(BaseModel):
    issued: int = 0
    failed: int = 0
    results: list[IssueInvoiceResult] = Field(default_factory=list)


class CanIssueResult(BaseModel):
    can_issue: bool
    reason: str | None = None
    company_id: int | None = None
    company_name: str | None = None


class InvoicePdfResult(BaseModel):
    success: bool
    pdf_bytes: bytes | None = None
    pdf_url: str | None = None
    error: str | None = None


class CancelInvoiceResult(BaseModel):
    success: bool
    error: str | None = None


# ---------- Payload fournisseur ----------
class ProviderInvoiceLine(BaseModel):
    name: str
    quantity: int
    unit_price_net: Decimal
    unit_price_gross: Decimal
    vat_amount: Decimal
    vat_rate: str  # ex: "19%"
    sku: str | None = None
    unit: str = "pcs"


class ProviderInvoicePayload(BaseModel):
    issue_date: str  # YYYY-MM-DD
    series: str
    number: int
    currency: str
    vat_rate: str
    status: str = "issued"
    document_type: str = "invoice"

    client_name: str
    client_type: str  # "individual" | "company"
    client_tax_code: str | None = None
    client_reg_number: str | None = None
    client_address: str
    client_province: str = ""
    client_city: str = ""
    client_country: str
    client_email: str | None = None
    client_phone: str | None = None

    notes: str | None = None
    lines: list[ProviderInvoiceLine] = Field(default_factory=list)


class ProviderInvoiceResult(BaseModel):
    success: bool
    invoice_id: str | None = None
    invoice_number: str | None = None
    invoice_series: str | None = None
    pdf_url: str | None = None
    error: str | None = None
    error_code: str | None = None


class ProviderPdfResult(BaseModel):
    success: bool
    pdf_bytes: bytes | None = None
    pdf_url: str | None = None
    error: str | None = None


class ProviderCancelResult(BaseModel):
    success: bool
    error: str | None = None
