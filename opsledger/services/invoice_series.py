"""
Numérotation des factures : séries (préfixe + compteur) et résolution
de la série à utiliser pour une firme / un magazin.

Le compteur vit en base (InvoiceSeries.current_number = PROCHAIN numéro),
jamais en mémoire : une allocation = une transaction sur la ligne
verrouillée de la série.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from opsledger.app.db.models.models_v1 import Invoice, InvoiceSeries, Store
from opsledger.app.schemas.invoicing import AllocatedNumber, NumberPreview, SeriesValidation
from opsledger.services.errors import SequenceInactive, SequenceNotFound

logger = logging.getLogger(__name__)


def format_invoice_number(prefix: str, number: int, padding: int) -> str:
    return f"{prefix}{str(number).zfill(padding)}"


def _last_issued_number(db: Session, series_id: int) -> int | None:
    return db.scalar(
        select(func.max(Invoice.invoice_number))
        .where(Invoice.invoice_series_id == series_id)
        .where(Invoice.invoice_number.is_not(None))
    )


def _next_number(series: InvoiceSeries, last_issued: int | None) -> tuple[int, list[str]]:
    """
    Auto-correction du compteur, dans cet ordre :
        1) <= 0            -> max(1, start_number)
        2) < start_number  -> start_number
        3) une facture de la série porte déjà un numéro >= compteur -> dernier + 1
    """
    number = series.current_number
    corrections: list[str] = []

    if number < 1:
        healed = max(1, series.start_number or 1)
        corrections.append(f"non-positive counter corrected: {number} -> {healed}")
        number = healed

    if number < series.start_number:
        corrections.append(f"below start number corrected: {number} -> {series.start_number}")
        number = series.start_number

    if last_issued is not None and last_issued >= number:
        corrections.append(f"gap detected, last invoice {last_issued}, corrected: {number} -> {last_issued + 1}")
        number = last_issued + 1

    return number, corrections


def _lock_series(db: Session, series_id: int) -> InvoiceSeries | None:
    return (
        db.execute(
            select(InvoiceSeries)
            .where(InvoiceSeries.id == series_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )


def allocate_next(db: Session, series_id: int) -> AllocatedNumber:
    """
    Attribue le prochain numéro de la série et avance le compteur.

    Deux appels concurrents sur la même série sont sérialisés par le verrou
    de ligne : numéros distincts et strictement croissants. Le compteur
    corrigé et l'incrément sont écrits dans la même transaction.
    """
    try:
        series = _lock_series(db, series_id)
        if series is None:
            raise SequenceNotFound(series_id)
        if not series.is_active:
            raise SequenceInactive(series_id, series.prefix)

        number, corrections = _next_number(series, _last_issued_number(db, series_id))
        correction_message = None
        if corrections:
            correction_message = f"Series {series.prefix} auto-corrected: {'; '.join(corrections)}"
            logger.warning(correction_message)

        padding = series.number_padding or 6
        allocated = AllocatedNumber(
            series_id=series.id,
            prefix=series.prefix,
            number=number,
            formatted=format_invoice_number(series.prefix, number, padding),
            padding=padding,
            provider_series_code=series.provider_series_code,
            correction_applied=bool(corrections),
            correction_message=correction_message,
        )

        series.current_number = number + 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Allocated invoice number %s (series %s)", allocated.formatted, series_id)
    return allocated


def preview_next(db: Session, series_id: int) -> NumberPreview:
    """Numéro qui serait attribué maintenant (même correction), sans écrire."""
    series = db.get(InvoiceSeries, series_id)
    if series is None:
        raise SequenceNotFound(series_id)
    if not series.is_active:
        raise SequenceInactive(series_id, series.prefix)

    number, corrections = _next_number(series, _last_issued_number(db, series_id))
    return NumberPreview(
        series_id=series.id,
        prefix=series.prefix,
        number=number,
        formatted=format_invoice_number(series.prefix, number, series.number_padding or 6),
        correction_pending=bool(corrections),
    )


def rollback_allocation(db: Session, series_id: int, number: int) -> bool:
    """
    Compensation après un échec fournisseur : remet le compteur à `number`.

    Appliquée uniquement si le compteur vaut encore `number + 1`. Si un autre
    appel a alloué entre temps, on ne touche à rien (trou plutôt que doublon).
    """
    try:
        result = db.execute(
            update(InvoiceSeries)
            .where(InvoiceSeries.id == series_id)
            .where(InvoiceSeries.current_number == number + 1)
            .values(current_number=number)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if result.rowcount != 1:
        logger.warning(
            "Rollback of number %s on series %s skipped: counter already moved, number left as a gap",
            number,
            series_id,
        )
        return False

    logger.info("Rolled back invoice number %s on series %s", number, series_id)
    return True


# ---------- RÉSOLUTION DE SÉRIE ----------
def get_default_series(db: Session) -> InvoiceSeries | None:
    return db.scalar(
        select(InvoiceSeries)
        .where(InvoiceSeries.is_default.is_(True), InvoiceSeries.is_active.is_(True))
        .order_by(InvoiceSeries.created_at.asc(), InvoiceSeries.id.asc())
        .limit(1)
    )


def get_series_for_company(db: Session, company_id: int) -> InvoiceSeries | None:
    """Série par défaut active de la firme, sinon sa première série active."""
    default = db.scalar(
        select(InvoiceSeries)
        .where(
            InvoiceSeries.company_id == company_id,
            InvoiceSeries.is_active.is_(True),
            InvoiceSeries.is_default.is_(True),
        )
        .order_by(InvoiceSeries.id.asc())
        .limit(1)
    )
    if default is not None:
        return default

    return db.scalar(
        select(InvoiceSeries)
        .where(InvoiceSeries.company_id == company_id, InvoiceSeries.is_active.is_(True))
        .order_by(InvoiceSeries.created_at.asc(), InvoiceSeries.id.asc())
        .limit(1)
    )


def get_series_for_store(db: Session, store_id: int) -> InvoiceSeries | None:
    """
    1) série propre au magazin
    2) série par défaut de la firme du magazin
    3) série par défaut globale
    """
    store = db.get(Store, store_id)
    if store is not None:
        if store.invoice_series is not None and store.invoice_series.is_active:
            return store.invoice_series

        if store.company_id is not None:
            company_default = db.scalar(
                select(InvoiceSeries)
                .where(
                    InvoiceSeries.company_id == store.company_id,
                    InvoiceSeries.is_active.is_(True),
                    InvoiceSeries.is_default.is_(True),
                )
                .limit(1)
            )
            if company_default is not None:
                return company_default

    return get_default_series(db)


def list_series_for_company(db: Session, company_id: int) -> list[InvoiceSeries]:
    return list(
        db.execute(
            select(InvoiceSeries)
            .where(InvoiceSeries.company_id == company_id, InvoiceSeries.is_active.is_(True))
            .order_by(InvoiceSeries.is_default.desc(), InvoiceSeries.name.asc())
        )
        .scalars()
        .all()
    )


def _active_series_of_company(db: Session, series_id: int, company_id: int) -> InvoiceSeries | None:
    return db.scalar(
        select(InvoiceSeries).where(
            InvoiceSeries.id == series_id,
            InvoiceSeries.company_id == company_id,
            InvoiceSeries.is_active.is_(True),
        )
    )


def validate_series_for_company(db: Session, series_id: int, company_id: int) -> SeriesValidation:
    if _active_series_of_company(db, series_id, company_id) is None:
        return SeriesValidation(valid=False, error="The series does not belong to this company or is inactive")
    return SeriesValidation(valid=True)


def validate_series_for_store(db: Session, series_id: int, store_id: int) -> SeriesValidation:
    """Une série assignée à un magazin doit appartenir à sa firme et être active."""
    store = db.get(Store, store_id)
    if store is None:
        return SeriesValidation(valid=False, error="Store was not found")

    if store.company_id is None:
        return SeriesValidation(
            valid=False,
            error="The store has no company. Set the company before configuring the series.",
        )

    if _active_series_of_company(db, series_id, store.company_id) is None:
        return SeriesValidation(
            valid=False,
            error="The selected series does not belong to the store's company or is inactive",
        )

    return SeriesValidation(valid=True)
