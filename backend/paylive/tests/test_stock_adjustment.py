"""Tests for restock/unrestock stock deltas."""

from paylive.models import StockItem
from paylive.services.product_reference import LineItem
from paylive.services.stock_adjustment import (
    StockAdjustmentMode,
    apply_stock_adjustment,
    reserve_stock_for_payment,
    sellable_quantities,
)


def _counts(db, row):
    db.refresh(row)
    return row.quantity, row.bought


def test_restock_then_unrestock_restores_counters(test_db_session, test_store, test_stock):
    robe = test_stock["Robe"]
    items = [LineItem("prod_A", 2)]

    apply_stock_adjustment(test_db_session, test_store.id, items, StockAdjustmentMode.unrestock)
    test_db_session.commit()
    assert _counts(test_db_session, robe) == (3, 2)

    apply_stock_adjustment(test_db_session, test_store.id, items, StockAdjustmentMode.restock)
    test_db_session.commit()
    assert _counts(test_db_session, robe) == (5, 0)


def test_quantity_plus_bought_is_conserved(test_db_session, test_store, test_stock):
    sac = test_stock["Sac"]
    before = sum(_counts(test_db_session, sac))

    apply_stock_adjustment(test_db_session, test_store.id, [LineItem("Sac", 1)], StockAdjustmentMode.restock)
    test_db_session.commit()

    assert sum(_counts(test_db_session, sac)) == before


def test_counters_never_go_negative(test_db_session, test_store, test_stock):
    sac = test_stock["Sac"]

    apply_stock_adjustment(test_db_session, test_store.id, [LineItem("prod_B", 10)], StockAdjustmentMode.unrestock)
    test_db_session.commit()
    assert _counts(test_db_session, sac) == (0, 11)

    apply_stock_adjustment(test_db_session, test_store.id, [LineItem("prod_B", 20)], StockAdjustmentMode.restock)
    test_db_session.commit()
    assert _counts(test_db_session, sac) == (20, 0)


def test_untracked_quantity_stays_null(test_db_session, test_store, test_stock):
    bague = test_stock["Bague"]

    apply_stock_adjustment(test_db_session, test_store.id, [LineItem("Bague", 2)], StockAdjustmentMode.restock)
    test_db_session.commit()
    assert _counts(test_db_session, bague) == (None, 1)

    apply_stock_adjustment(test_db_session, test_store.id, [LineItem("Bague", 4)], StockAdjustmentMode.unrestock)
    test_db_session.commit()
    assert _counts(test_db_session, bague) == (None, 5)


def test_product_ids_and_free_references_resolve_separately(test_db_session, test_store, test_stock):
    result = apply_stock_adjustment(
        test_db_session,
        test_store.id,
        [LineItem("prod_A", 1), LineItem("Sac", 1), LineItem("prod_A", 1), LineItem("Inconnu", 1)],
        StockAdjustmentMode.unrestock,
    )
    test_db_session.commit()

    assert result.adjusted == {test_stock["Robe"].id: 2, test_stock["Sac"].id: 1}
    assert result.unresolved == ["Inconnu"]


def test_other_store_rows_are_untouched(test_db_session, test_store, test_stock):
    from paylive.models import Store

    other = Store(name="Autre", slug="autre")
    test_db_session.add(other)
    test_db_session.commit()
    foreign = StockItem(store_id=other.id, product_reference="Robe", product_stripe_id="prod_A", quantity=7, bought=0)
    test_db_session.add(foreign)
    test_db_session.commit()

    apply_stock_adjustment(test_db_session, test_store.id, [LineItem("prod_A", 1)], StockAdjustmentMode.unrestock)
    test_db_session.commit()

    assert _counts(test_db_session, foreign) == (7, 0)


def test_reserve_stock_for_payment_unrestocks(test_db_session, test_store, test_stock):
    result = reserve_stock_for_payment(test_db_session, test_store.id, [LineItem("prod_A", 2)])

    test_db_session.refresh(test_stock["Robe"])
    assert result.mode == StockAdjustmentMode.unrestock
    assert (test_stock["Robe"].quantity, test_stock["Robe"].bought) == (3, 2)


def test_sellable_quantities(test_db_session, test_store, test_stock):
    test_stock["Sac"].quantity = 0
    test_db_session.commit()

    quantities = sellable_quantities(test_db_session, test_store.id, ["prod_A", "prod_B", "Bague", "prod_missing"])

    assert quantities == {"prod_A": 5, "prod_B": 0, "Bague": None, "prod_missing": None}
