"""
Erreurs métier du ledger de stock et de la numérotation des factures.

Chaque erreur porte un message lisible (affiché tel quel par l'UI) et un
code stable. Le ledger et l'allocateur lèvent ; le traitement des commandes
collecte ; l'orchestrateur de facturation convertit en résultat.
"""

from __future__ import annotations

from decimal import Decimal


class LedgerError(Exception):
    code = "LEDGER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ItemNotFound(LedgerError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, item_ref):
        super().__init__(f"Item {item_ref} was not found")
        self.item_ref = item_ref


class InsufficientStock(LedgerError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, *, sku: str, name: str, current: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient stock for {name} ({sku}). "
            f"Current stock: {current}, requested: {requested}"
        )
        self.sku = sku
        self.current = current
        self.requested = requested


class CompositionError(LedgerError):
    code = "INVALID_COMPOSITION"


class SequenceNotFound(LedgerError):
    code = "SEQUENCE_NOT_FOUND"

    def __init__(self, series_id):
        super().__init__(f"Invoice series {series_id} was not found")
        self.series_id = series_id


class SequenceInactive(LedgerError):
    code = "SEQUENCE_INACTIVE"

    def __init__(self, series_id, prefix: str):
        super().__init__(f"Invoice series {prefix} is inactive")
        self.series_id = series_id


class ProviderFailure(LedgerError):
    code = "PROVIDER_ERROR"

    def __init__(self, provider_error: str, provider_code: str | None = None):
        super().__init__(provider_error)
        self.provider_error = provider_error
        self.provider_code = provider_code


class PrerequisiteNotMet(LedgerError):
    code = "PREREQUISITE_NOT_MET"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class ConfigurationMissing(LedgerError):
    code = "CONFIGURATION_MISSING"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class OrderNotFound(LedgerError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} was not found")
        self.order_id = order_id


class InvoiceAlreadyIssued(LedgerError):
    code = "ALREADY_ISSUED"

    def __init__(self, formatted: str):
        super().__init__(f"The invoice has already been issued: {formatted}")
        self.formatted = formatted
