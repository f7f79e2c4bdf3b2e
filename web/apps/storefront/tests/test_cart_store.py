"""Cart store tests: stock ceilings, totals, persistence and hydration."""

import json
from decimal import Decimal

import pytest

from apps.storefront.adapters import CatalogStub, InMemoryKeyValueStore
from apps.storefront.cart import CART_NAMESPACE, CartStore
from apps.storefront.domain import Destination, Product

TEE = Product("prod_tee", "Classic Tee", Decimal("50.00"), {"S": 5, "M": 10, "L": 0})
CAP = Product("prod_cap", "Logo Cap", Decimal("24.50"), {"OS": 2})


class DownCatalog(CatalogStub):
    def list_products(self):
        raise ConnectionError("inventory down")

    def get_product(self, product_id):
        raise ConnectionError("inventory down")


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def catalog():
    return CatalogStub([TEE, CAP])


def make_cart(kv, catalog, cart_id="cart-1"):
    return CartStore(cart_id, kv, catalog)


def test_add_line_increments_up_to_stock(kv, catalog):
    cart = make_cart(kv, catalog)

    assert cart.add_line(CAP, "OS") is True
    assert cart.add_line(CAP, "OS") is True
    assert cart.add_line(CAP, "OS") is False

    assert len(cart.get()) == 1
    assert cart.find("prod_cap", "OS").quantity == 2


def test_add_line_refuses_missing_size_and_zero_stock(kv, catalog):
    cart = make_cart(kv, catalog)

    assert cart.add_line(TEE, "") is False
    assert cart.add_line(TEE, None) is False
    assert cart.add_line(TEE, "L") is False
    assert cart.get() == ()


def test_add_line_uses_fresh_catalog_stock(kv, catalog):
    cart = make_cart(kv, catalog)
    catalog.set_stock("prod_tee", "S", 0)

    # the product object still says 5, the catalog says 0
    assert cart.add_line(TEE, "S") is False


def test_same_product_different_sizes_are_separate_lines(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "S")
    cart.add_line(TEE, "M")
    cart.add_line(TEE, "S")

    assert [(l.size, l.quantity) for l in cart.get()] == [("S", 2), ("M", 1)]
    assert cart.total_items == 3


def test_update_quantity_clamps_to_stock(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "S")

    line = cart.update_quantity("prod_tee", "S", 99)

    assert line.quantity == 5
    assert cart.find("prod_tee", "S").quantity == 5


def test_update_quantity_ignores_values_below_one(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "S")
    cart.update_quantity("prod_tee", "S", 3)

    cart.update_quantity("prod_tee", "S", 0)
    cart.update_quantity("prod_tee", "S", -4)

    assert cart.find("prod_tee", "S").quantity == 3


def test_update_quantity_unchanged_when_size_sold_out(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "S")
    cart.update_quantity("prod_tee", "S", 2)
    catalog.set_stock("prod_tee", "S", 0)

    cart.update_quantity("prod_tee", "S", 4)

    assert cart.find("prod_tee", "S").quantity == 2


def test_update_unknown_line_returns_none(kv, catalog):
    assert make_cart(kv, catalog).update_quantity("prod_tee", "XL", 2) is None


def test_remove_and_clear(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "S")
    cart.add_line(CAP, "OS")

    cart.remove_line("prod_tee", "S")
    assert [l.product_id for l in cart.get()] == ["prod_cap"]

    cart.clear()
    assert cart.get() == ()
    assert json.loads(kv.get(CART_NAMESPACE, "cart-1")) == []


def test_totals_for_local_destination(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "M")
    cart.add_line(TEE, "M")

    totals = cart.totals(Destination(country="CA", region="ON"))

    assert totals.subtotal == Decimal("100.00")
    assert totals.tax == Decimal("2.00")
    assert totals.shipping == Decimal("0.00")
    assert totals.total == Decimal("102.00")
    assert totals.currency == "CAD"


def test_totals_shipping_rules_and_empty_cart(kv, catalog):
    cart = make_cart(kv, catalog)
    assert cart.totals(Destination(country="US")).shipping == Decimal("0.00")

    cart.add_line(CAP, "OS")
    assert cart.totals(Destination(country="CA", region="QC")).shipping == Decimal("15.00")
    assert cart.totals(Destination(country="US", region="NY")).shipping == Decimal("30.00")
    assert cart.totals().shipping == Decimal("0.00")


def test_subscribers_see_mutations(kv, catalog):
    cart = make_cart(kv, catalog)
    counts = []
    cart.subscribe(lambda: counts.append(cart.total_items))

    cart.add_line(CAP, "OS")
    cart.add_line(CAP, "OS")
    cart.remove_line("prod_cap", "OS")

    assert counts == [1, 2, 0]


def test_cart_survives_reload(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(TEE, "S")
    cart.add_line(TEE, "S")
    cart.add_line(CAP, "OS")

    reloaded = make_cart(kv, catalog)

    assert [(l.product_id, l.size, l.quantity) for l in reloaded.get()] == [
        ("prod_tee", "S", 2),
        ("prod_cap", "OS", 1),
    ]


def test_hydration_drops_sold_out_and_clamps(kv, catalog):
    cart = make_cart(kv, catalog)
    for _ in range(4):
        cart.add_line(TEE, "S")
    cart.add_line(CAP, "OS")

    catalog.set_stock("prod_tee", "S", 3)
    catalog.set_stock("prod_cap", "OS", 0)
    reloaded = make_cart(kv, catalog)

    assert [(l.product_id, l.quantity, l.size_stock) for l in reloaded.get()] == [("prod_tee", 3, 3)]
    # the corrected snapshot is written back
    assert len(json.loads(kv.get(CART_NAMESPACE, "cart-1"))) == 1


def test_hydration_drops_products_no_longer_sold(kv, catalog):
    make_cart(kv, catalog).add_line(CAP, "OS")
    assert make_cart(kv, CatalogStub([TEE])).get() == ()


def test_hydration_uses_recorded_stock_when_catalog_down(kv, catalog):
    cart = make_cart(kv, catalog)
    cart.add_line(CAP, "OS")
    cart.add_line(CAP, "OS")

    reloaded = make_cart(kv, DownCatalog([TEE, CAP]))

    assert reloaded.find("prod_cap", "OS").quantity == 2


def test_hydration_merges_duplicate_lines(kv, catalog):
    line = {
        "product": {"id": "prod_tee", "name": "Classic Tee", "price": "50.00", "stock": {"S": 5}},
        "size": "S",
        "quantity": 3,
        "size_stock": 5,
    }
    kv.set(CART_NAMESPACE, "cart-1", json.dumps([line, line]))

    cart = make_cart(kv, catalog)

    assert [(l.size, l.quantity) for l in cart.get()] == [("S", 5)]


@pytest.mark.parametrize("raw", ["{not json", json.dumps({"lines": []}), json.dumps("x")])
def test_corrupt_snapshot_yields_empty_cart(kv, catalog, raw):
    kv.set(CART_NAMESPACE, "cart-1", raw)
    assert make_cart(kv, catalog).get() == ()


def test_malformed_lines_are_dropped(kv, catalog):
    good = {
        "product": {"id": "prod_cap", "name": "Logo Cap", "price": "24.50", "stock": {"OS": 2}},
        "size": "OS",
        "quantity": 1,
        "size_stock": 2,
    }
    kv.set(CART_NAMESPACE, "cart-1", json.dumps([good, {"size": "M"}, {**good, "quantity": 0}]))

    assert [l.product_id for l in make_cart(kv, catalog).get()] == ["prod_cap"]
