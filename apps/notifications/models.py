# apps/notifications/models.py
from django.conf import settings
from django.db import models

from apps.utils.models import TimestampedModel


class NotificationChannel(models.TextChoices):
    SMS = "sms", "SMS"


class NotificationStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"


class NotificationTemplate(TimestampedModel):
    """
    Admin-editable override for a notification type.

    Example key:
    - payment_confirmed_customer
    - payment_failed_customer
    - payment_received_admin

    When no active row exists for a key the built-in default text is used.
    """

    key = models.CharField(max_length=100, unique=True, db_index=True)

    channel = models.CharField(
        max_length=20,
        choices=NotificationChannel.choices,
        default=NotificationChannel.SMS,
    )

    body_template = models.TextField()
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["key"]

    def __str__(self):
        return f"[{self.channel}] {self.key}"


class Notification(TimestampedModel):
    """
    Outbox row.

    - Created inside the transaction that caused it.
    - Sent by a Celery task once that transaction commits.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="notifications",
    )
    phone = models.CharField(max_length=20)

    event_key = models.CharField(max_length=100, db_index=True)
    template = models.ForeignKey(
        NotificationTemplate,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="notifications",
    )

    channel = models.CharField(
        max_length=20,
        choices=NotificationChannel.choices,
        default=NotificationChannel.SMS,
    )

    body = models.TextField()
    data = models.JSONField(default=dict, blank=True)

    status = models.CharField(
        max_length=20,
        choices=NotificationStatus.choices,
        default=NotificationStatus.PENDING,
        db_index=True,
    )
    attempts = models.PositiveIntegerField(default=0)

    error_message = models.TextField(blank=True)
    provider_message_id = models.CharField(max_length=255, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="notif_status_created_idx"),
        ]

    def __str__(self):
        return f"{self.phone} [{self.channel}] {self.event_key}"
