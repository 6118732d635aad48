"""
Client du fournisseur de facturation (service externe).

L'orchestrateur ne connaît que le protocole `InvoicingProvider` ; le client
HTTP concret est construit par firme à partir de ses identifiants.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Protocol

import requests
from pydantic import BaseModel

from opsledger.app.core.config import settings
from opsledger.app.db.models.models_v1 import Company
from opsledger.app.schemas.invoicing import (
    ProviderCancelResult,
    ProviderInvoicePayload,
    ProviderInvoiceResult,
    ProviderPdfResult,
)
from opsledger.services.errors import ConfigurationMissing

logger = logging.getLogger(__name__)


class InvoicingProvider(Protocol):
    name: str

    def create_invoice(self, payload: ProviderInvoicePayload) -> ProviderInvoiceResult: ...

    def get_invoice_pdf(self, invoice_id: str) -> ProviderPdfResult: ...

    def cancel_invoice(self, invoice_id: str) -> ProviderCancelResult: ...


class ProviderCredentials(BaseModel):
    api_key: str
    username: str | None = None
    password: str | None = None
    tax_code: str | None = None


class HttpInvoicingProvider:
    name = "http"

    def __init__(
        self,
        credentials: ProviderCredentials,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.credentials = credentials
        self.base_url = (base_url or settings.invoice_provider_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.invoice_provider_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"X-API-Key": credentials.api_key, "Accept": "application/json"})

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _auth_fields(self) -> dict:
        fields = {}
        if self.credentials.username:
            fields["username"] = self.credentials.username
        if self.credentials.password:
            fields["password"] = self.credentials.password
        if self.credentials.tax_code:
            fields["cif"] = self.credentials.tax_code
        return fields

    def create_invoice(self, payload: ProviderInvoicePayload) -> ProviderInvoiceResult:
        """
        POST form-encoded ; les lignes partent en JSON dans un champ.
        Réponse JSON {success, id, number, series, pdf_url} ou texte brut
        (certains comptes renvoient juste "OK <id>").
        """
        form = self._auth_fields()
        form.update(payload.model_dump(mode="json", exclude={"lines"}, exclude_none=True))
        form["lines"] = json.dumps([line.model_dump(mode="json") for line in payload.lines])

        try:
            response = self.session.post(self._url("/invoices"), data=form, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Invoice provider unreachable: %s", exc)
            return ProviderInvoiceResult(success=False, error=f"Provider connection error: {exc}")

        data = _parse_body(response)

        if not response.ok:
            return ProviderInvoiceResult(
                success=False,
                error=_error_message(data, response),
                error_code=str(data.get("code") or response.status_code),
            )

        if data.get("success") is False:
            return ProviderInvoiceResult(
                success=False,
                error=_error_message(data, response),
                error_code=str(data["code"]) if data.get("code") is not None else None,
            )

        return ProviderInvoiceResult(
            success=True,
            invoice_id=str(data.get("id") or data.get("invoice_id") or f"{payload.series}{payload.number}"),
            invoice_number=str(data.get("number") or payload.number),
            invoice_series=data.get("series") or payload.series,
            pdf_url=data.get("pdf_url"),
        )

    def get_invoice_pdf(self, invoice_id: str) -> ProviderPdfResult:
        try:
            response = self.session.get(self._url(f"/invoices/{invoice_id}/pdf"), timeout=self.timeout)
        except requests.RequestException as exc:
            return ProviderPdfResult(success=False, error=f"Provider connection error: {exc}")

        if not response.ok:
            return ProviderPdfResult(success=False, error=_error_message(_parse_body(response), response))

        if response.headers.get("Content-Type", "").startswith("application/pdf"):
            return ProviderPdfResult(success=True, pdf_bytes=response.content)

        data = _parse_body(response)
        if data.get("pdf_base64"):
            return ProviderPdfResult(success=True, pdf_bytes=base64.b64decode(data["pdf_base64"]))
        if data.get("pdf_url"):
            return ProviderPdfResult(success=True, pdf_url=data["pdf_url"])
        return ProviderPdfResult(success=False, error="Provider returned no PDF")

    def cancel_invoice(self, invoice_id: str) -> ProviderCancelResult:
        try:
            response = self.session.post(
                self._url(f"/invoices/{invoice_id}/cancel"),
                data=self._auth_fields(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            return ProviderCancelResult(success=False, error=f"Provider connection error: {exc}")

        if not response.ok:
            return ProviderCancelResult(success=False, error=_error_message(_parse_body(response), response))
        return ProviderCancelResult(success=True)


def _parse_body(response: requests.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        text = (response.text or "").strip()
        if response.ok and text.upper().startswith("OK"):
            parts = text.split()
            return {"success": True, "id": parts[1] if len(parts) > 1 else None}
        return {"success": False, "message": text or None}
    return data if isinstance(data, dict) else {}


def _error_message(data: dict, response: requests.Response) -> str:
    return str(
        data.get("error")
        or data.get("message")
        or f"Provider responded with HTTP {response.status_code}"
    )


def has_provider_credentials(company: Company | None) -> bool:
    return bool(company is not None and company.provider_api_key)


def client_for_company(company: Company) -> InvoicingProvider:
    """Client HTTP configuré avec les identifiants de la firme."""
    if not has_provider_credentials(company):
        raise ConfigurationMissing(
            f"Company {company.name} has no invoicing provider credentials configured",
            code="NO_CREDENTIALS",
        )

    return HttpInvoicingProvider(
        ProviderCredentials(
            api_key=company.provider_api_key,
            username=company.provider_username,
            password=company.provider_password,
            tax_code=company.provider_tax_code or company.cif,
        )
    )
