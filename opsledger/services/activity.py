from __future__ import annotations

import json
import logging

from sqlalchemy.orm import Session

from opsledger.app.db.models.models_v1 import AuditLog

logger = logging.getLogger(__name__)


def log_activity(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id,
    meta: dict | None = None,
    actor: str | None = None,
) -> AuditLog:
    entry = AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        meta=json.dumps(meta, default=str) if meta else None,
    )
    db.add(entry)
    db.commit()
    return entry


def log_invoice_issued(
    db: Session,
    *,
    order_id: int,
    order_number: str,
    invoice_number: str,
    company_name: str | None,
    actor: str | None = None,
) -> None:
    """Trace d'audit de l'émission. Fire-and-forget : un échec est loggé, jamais remonté."""
    try:
        log_activity(
            db,
            action="invoice.issued",
            entity_type="order",
            entity_id=order_id,
            meta={
                "order_number": order_number,
                "invoice_number": invoice_number,
                "company": company_name,
            },
            actor=actor,
        )
    except Exception:
        db.rollback()
        logger.warning("Could not write activity log for invoice %s", invoice_number, exc_info=True)
