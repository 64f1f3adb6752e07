from django.db import models
from django.conf import settings
from django.utils import timezone

from apps.orders.models import Order
from apps.utils.models import TimestampedModel
from apps.utils.utils import generate_reference_number


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


PaymentMethod = Order.PaymentMethod

TERMINAL_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED)


class Payment(TimestampedModel):
    """
    Authoritative record of an order's payment. Order.payment_status,
    Order.status and Order.mobile_money are mirrors written alongside it.
    """
    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name="payment")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="payments"
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="RWF")
    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices)
    status = models.CharField(max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True)

    # Our generated request id for the current gateway attempt
    transaction_id = models.CharField(max_length=50, unique=True, null=True, blank=True)
    # The gateway's own id, known once it reports back
    gateway_transaction_id = models.CharField(max_length=100, blank=True)
    reference_number = models.CharField(max_length=30, unique=True, editable=False)

    # Method specific sub-records
    mobile_money = models.JSONField(default=dict, blank=True)
    momo_pay = models.JSONField(default=dict, blank=True)
    cash_on_delivery = models.JSONField(default=dict, blank=True)

    # Audit fields
    gateway_response = models.JSONField(default=dict, blank=True)
    refund_reason = models.TextField(blank=True)
    initiated_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    status_history = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "payment_method", "initiated_at"], name="payments_status_method_idx"),
        ]

    def __str__(self):
        return f"{self.reference_number} | {self.amount} | {self.status}"

    def save(self, *args, **kwargs):
        if not self.reference_number:
            candidate = generate_reference_number()
            while Payment.objects.filter(reference_number=candidate).exists():
                candidate = generate_reference_number()
            self.reference_number = candidate
        super().save(*args, **kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record_status(self, status: str, note: str = "", updated_by: str = "system"):
        """Sets status and appends to the history list. Caller saves."""
        self.status = status
        self.status_history = list(self.status_history or []) + [{
            "status": status,
            "timestamp": timezone.now().isoformat(),
            "note": note,
            "updatedBy": updated_by,
        }]


class CallbackLog(TimestampedModel):
    """
    Raw audit of every gateway result we received or fetched.
    """
    class Source(models.TextChoices):
        CALLBACK = "callback", "Callback"
        VERIFY = "verify", "Manual verification"
        EXPIRY = "expiry", "Expiry sweep"

    class Outcome(models.TextChoices):
        APPLIED = "applied", "Applied"
        DUPLICATE = "duplicate", "Duplicate"
        NOT_FOUND = "not_found", "Order not found"
        IGNORED = "ignored", "Ignored"

    transaction_id = models.CharField(max_length=50, db_index=True)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.CALLBACK)
    payload = models.JSONField(default=dict, blank=True)
    outcome = models.CharField(max_length=20, choices=Outcome.choices)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.source} {self.transaction_id} -> {self.outcome}"
