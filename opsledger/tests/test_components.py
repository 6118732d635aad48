from decimal import Decimal

from opsledger.app.db.models.models_v1 import Item
from opsledger.services.catalog import find_item_by_sku
from opsledger.services.components import resolve_effective_components


def test_simple_item_resolves_to_itself(db_session, make_item):
    mug = make_item("MUG", stock=3)

    comps = resolve_effective_components(find_item_by_sku(db_session, "MUG"))

    assert [(c.item_id, c.sku, c.multiplier) for c in comps] == [(mug.id, "MUG", Decimal(1))]


def test_composite_resolves_to_recipe_in_order(db_session, make_item, make_composite):
    a = make_item("A")
    b = make_item("B")
    make_composite("BUNDLE", [("B", 3), ("A", 2)])

    comps = resolve_effective_components(find_item_by_sku(db_session, "BUNDLE"))

    assert [(c.item_id, c.multiplier) for c in comps] == [(b.id, Decimal(3)), (a.id, Decimal(2))]


def test_composite_without_recipe_behaves_as_simple(db_session):
    item = Item(sku="EMPTY-BOX", name="Empty box", is_composite=True)
    db_session.add(item)
    db_session.commit()

    comps = resolve_effective_components(find_item_by_sku(db_session, "EMPTY-BOX"))

    assert len(comps) == 1
    assert comps[0].item_id == item.id
    assert comps[0].multiplier == Decimal(1)
