from django.db import models


class Product(models.Model):
    """Catalog entry carrying the inventory record for one part.

    ``stock`` and ``sold_count`` are owned by ``apps.catalog.ledger``; no other
    code path writes them.
    """

    name = models.CharField(max_length=200)
    part_number = models.CharField(max_length=64, unique=True)
    image_url = models.URLField(max_length=500, blank=True, default="")
    price_cents = models.PositiveIntegerField()
    stock = models.PositiveIntegerField(default=0)
    sold_count = models.PositiveIntegerField(default=0)
    low_stock_threshold = models.PositiveIntegerField(default=5)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "products"
        ordering = ["name"]

    def __str__(self):
        return f"{self.part_number} {self.name}"

    @property
    def in_stock(self) -> bool:
        return self.stock > 0

    @property
    def is_low_stock(self) -> bool:
        return 0 < self.stock <= self.low_stock_threshold

    def save(self, *args, **kwargs):
        self.part_number = self.part_number.strip().upper()
        super().save(*args, **kwargs)
