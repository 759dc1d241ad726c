import pytest

from apps.catalog.reader import CatalogReader


@pytest.mark.django_db
def test_reads_price_and_stock_for_requested_ids(make_product):
    make_product("P1", price_cents=1000, stock=5)
    make_product("P2", price_cents=250, stock=None)
    make_product("P3", price_cents=99, stock=1)

    entries = {e.id: e for e in CatalogReader().get_products(["P1", "P2"])}

    assert set(entries) == {"P1", "P2"}
    assert entries["P1"].price_cents == 1000 and entries["P1"].stock_quantity == 5
    assert entries["P2"].stock_quantity is None


@pytest.mark.django_db
def test_inactive_and_unknown_products_are_absent(make_product):
    make_product("OFF", is_active=False)
    assert CatalogReader().get_products(["OFF", "GHOST"]) == []


@pytest.mark.django_db
def test_empty_request_returns_empty_snapshot():
    assert CatalogReader().get_products([]) == []
