from django.db import models

from .order import Order

__all__ = ["OrderStatusHistory"]


class OrderStatusHistory(models.Model):
    """
    Append-only audit trail. One row per order status mutation, never pruned.
    """
    order = models.ForeignKey(Order, related_name="status_history", on_delete=models.CASCADE)

    status = models.CharField(max_length=20)  # status *after* the change
    note = models.TextField(blank=True)
    updated_by = models.CharField(max_length=50, default="system")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]
        verbose_name_plural = "Order status history"

    def __str__(self):
        return f"{self.order_id} -> {self.status}"
