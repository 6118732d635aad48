import json

import pytest
import requests

from opsledger.app.db.models.models_v1 import Company
from opsledger.app.schemas.invoicing import ProviderInvoiceLine, ProviderInvoicePayload
from opsledger.services.errors import ConfigurationMissing
from opsledger.services.provider import (
    HttpInvoicingProvider,
    ProviderCredentials,
    client_for_company,
    has_provider_credentials,
)


class StubResponse:
    def __init__(self, status_code=200, body=None, text=None, headers=None, content=b""):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else (json.dumps(body) if body is not None else "")
        self.headers = headers or {"Content-Type": "application/json"}
        self.content = content

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class StubSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.headers = {}
        self.calls = []

    def _do(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.exc:
            raise self.exc
        return self.response

    def post(self, url, **kwargs):
        return self._do("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._do("GET", url, **kwargs)


def _payload():
    return ProviderInvoicePayload(
        issue_date="2026-10-19",
        series="MC",
        number=12,
        currency="RON",
        vat_rate="19%",
        client_name="Ana Pop",
        client_type="individual",
        client_address="Str. Lunga 1",
        client_country="Romania",
        lines=[
            ProviderInvoiceLine(
                name="Mug",
                quantity=1,
                unit_price_net="100.00",
                unit_price_gross="119.00",
                vat_amount="19.00",
                vat_rate="19%",
            )
        ],
    )


def _client(session):
    creds = ProviderCredentials(api_key="k-1", username="user", tax_code="RO1")
    return HttpInvoicingProvider(creds, base_url="https://provider.test/v1/", timeout=5, session=session)


def test_create_invoice_posts_form_and_reads_json():
    session = StubSession(StubResponse(body={"success": True, "id": "INV-9", "number": "12", "series": "MC"}))

    result = _client(session).create_invoice(_payload())

    assert result.success
    assert result.invoice_id == "INV-9"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://provider.test/v1/invoices")
    assert kwargs["timeout"] == 5
    assert kwargs["data"]["series"] == "MC"
    assert kwargs["data"]["cif"] == "RO1"
    assert json.loads(kwargs["data"]["lines"])[0]["unit_price_gross"] == "119.00"
    assert session.headers["X-API-Key"] == "k-1"


def test_plain_text_ok_is_success():
    session = StubSession(StubResponse(text="OK 5521", headers={"Content-Type": "text/plain"}))

    result = _client(session).create_invoice(_payload())

    assert result.success
    assert result.invoice_id == "5521"


def test_plain_text_without_ok_is_a_failure():
    session = StubSession(StubResponse(text="Series MC is closed", headers={"Content-Type": "text/plain"}))

    result = _client(session).create_invoice(_payload())

    assert not result.success
    assert result.error == "Series MC is closed"


def test_http_error_carries_code():
    session = StubSession(StubResponse(status_code=422, body={"error": "Invalid tax code", "code": 1042}))

    result = _client(session).create_invoice(_payload())

    assert not result.success
    assert result.error == "Invalid tax code"
    assert result.error_code == "1042"


def test_connection_error_is_a_failed_result():
    session = StubSession(exc=requests.ConnectionError("refused"))

    result = _client(session).create_invoice(_payload())

    assert not result.success
    assert "refused" in result.error


def test_pdf_bytes_and_cancel():
    pdf_session = StubSession(StubResponse(headers={"Content-Type": "application/pdf"}, content=b"%PDF"))
    cancel_session = StubSession(StubResponse(body={"success": True}))

    pdf = _client(pdf_session).get_invoice_pdf("INV-9")
    cancelled = _client(cancel_session).cancel_invoice("INV-9")

    assert pdf.success and pdf.pdf_bytes == b"%PDF"
    assert pdf_session.calls[0][1] == "https://provider.test/v1/invoices/INV-9/pdf"
    assert cancelled.success
    assert cancel_session.calls[0][1] == "https://provider.test/v1/invoices/INV-9/cancel"


def test_client_for_company_requires_credentials(monkeypatch):
    monkeypatch.setattr(requests, "Session", lambda: StubSession())

    with_key = Company(code="A", name="A SRL", provider_api_key="secret", cif="RO7")
    without_key = Company(code="B", name="B SRL")

    assert has_provider_credentials(with_key)
    assert not has_provider_credentials(without_key)
    assert client_for_company(with_key).credentials.tax_code == "RO7"
    with pytest.raises(ConfigurationMissing) as exc:
        client_for_company(without_key)
    assert exc.value.code == "NO_CREDENTIALS"
