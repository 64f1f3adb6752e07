from decimal import Decimal

from django.conf import settings
from django.db import models

from apps.utils.models import TimestampedModel
from apps.utils.utils import generate_order_number

__all__ = ["Order"]


class Order(TimestampedModel):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        CONFIRMED = "confirmed", "Confirmed"
        PROCESSING = "processing", "Processing"
        SHIPPED = "shipped", "Shipped"
        DELIVERED = "delivered", "Delivered"
        CANCELLED = "cancelled", "Cancelled"
        RETURNED = "returned", "Returned"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"

    class PaymentMethod(models.TextChoices):
        MOBILE_MONEY = "mobile_money", "Mobile Money"
        MOMO_PAY = "momo_pay", "MOMO Pay"
        CASH_ON_DELIVERY = "cash_on_delivery", "Cash on Delivery"
        CARD = "card", "Card"

    TERMINAL_PAYMENT_STATUSES = (
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    )

    order_number = models.CharField(max_length=20, unique=True, editable=False)
    reference_number = models.CharField(max_length=50, unique=True, null=True, blank=True)

    # Gateway transaction id of the current payment attempt
    external_id = models.CharField(max_length=50, unique=True, null=True, blank=True)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="orders",
    )
    customer_phone = models.CharField(max_length=20, blank=True)

    # Snapshot of address (JSON) to prevent historical drift
    shipping_address = models.JSONField(default=dict, blank=True)

    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="RWF")

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    payment_status = models.CharField(
        max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )
    payment_method = models.CharField(
        max_length=20, choices=PaymentMethod.choices, default=PaymentMethod.MOBILE_MONEY
    )

    # Read-only mirror of the authoritative Payment, written by apps.payments only
    mobile_money = models.JSONField(default=dict, blank=True)

    notes = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "payment_status"], name="orders_status_payment_idx"),
            models.Index(fields=["created_at"], name="orders_created_at_idx"),
        ]

    def __str__(self):
        return f"{self.order_number} [{self.status}/{self.payment_status}]"

    def save(self, *args, **kwargs):
        if not self.order_number:
            candidate = generate_order_number()
            while Order.objects.filter(order_number=candidate).exists():
                candidate = generate_order_number()
            self.order_number = candidate
        if not self.reference_number:
            self.reference_number = self.order_number
        super().save(*args, **kwargs)

    def compute_total(self) -> Decimal:
        return self.subtotal + self.tax + self.shipping_cost - self.discount

    @property
    def is_payment_terminal(self) -> bool:
        return self.payment_status in self.TERMINAL_PAYMENT_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.status in (self.Status.PENDING, self.Status.CONFIRMED, self.Status.PROCESSING)

    @property
    def is_payable(self) -> bool:
        return self.status == self.Status.PENDING and self.payment_status == self.PaymentStatus.PENDING
