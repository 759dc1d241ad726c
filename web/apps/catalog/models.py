from django.db import models


class ProductModel(models.Model):
    # Catalog rows are owned by the catalog admin; the order core only reads
    # price/stock and decrements stock on delivery.
    id = models.CharField(primary_key=True, max_length=64)
    name = models.CharField(max_length=255, blank=True, default="")
    price_cents = models.PositiveBigIntegerField()
    # NULL means stock is not tracked for this product (no limit).
    stock_quantity = models.IntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "products"
