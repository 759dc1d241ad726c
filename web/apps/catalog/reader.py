"""Catalog snapshot reader backed by the ``products`` table.

Implements ``CatalogPort`` for the order core. Reads are never cached:
every validation sees the current price and stock.
"""

from typing import Iterable, List

from apps.orders.domain import CatalogEntry, CatalogPort

from .models import ProductModel


class CatalogReader(CatalogPort):
    """Read price/stock for a set of product ids.

    Inactive products are left out of the snapshot, so the pricing
    validator reports them as not found.
    """

    def get_products(self, ids: Iterable[str]) -> List[CatalogEntry]:
        ids = list(ids)
        if not ids:
            return []
        rows = ProductModel.objects.filter(id__in=ids, is_active=True).values_list(
            "id", "price_cents", "stock_quantity"
        )
        return [CatalogEntry(id=pid, price_cents=price, stock_quantity=stock) for pid, price, stock in rows]
