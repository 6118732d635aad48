"""
Résolution des composants effectifs d'un article.

Définie une seule fois : utilisée par la vente, le retour, le contrôle de
disponibilité et le calcul du coût.
"""

from __future__ import annotations

from decimal import Decimal

from opsledger.app.db.models.models_v1 import Item
from opsledger.app.schemas.inventory import EffectiveComponent


def resolve_effective_components(item: Item) -> list[EffectiveComponent]:
    """
    - article simple (ou composé sans recette) -> lui-même, multiplicateur 1
    - article composé -> sa recette, telle quelle (un seul niveau)

    Pure : aucune écriture, n'utilise que les relations déjà chargées.
    """
    if not item.is_composite or not item.components:
        return [
            EffectiveComponent(
                item_id=item.id,
                sku=item.sku,
                name=item.name,
                multiplier=Decimal(1),
            )
        ]

    return [
        EffectiveComponent(
            item_id=comp.component.id,
            sku=comp.component.sku,
            name=comp.component.name,
            multiplier=Decimal(comp.multiplier),
        )
        for comp in item.components
    ]
