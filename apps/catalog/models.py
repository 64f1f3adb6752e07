# apps/catalog/models.py
import uuid
from django.db import models


class Product(models.Model):
    """
    Sellable item. Only price and stock matter to checkout; catalog
    presentation (images, SEO, categories) lives outside this service.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    sku_code = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Human-readable code (e.g. DRESS-KITENGE-M)",
    )
    name = models.CharField(max_length=255)

    price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=0,
        help_text="Customer-facing selling price (RWF)",
    )
    stock_quantity = models.PositiveIntegerField(default=0)

    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["is_active"], name="catalog_product_active_idx"),
        ]

    def __str__(self):
        return f"{self.sku_code} - {self.name}"
