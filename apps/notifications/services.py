# apps/notifications/services.py
import logging
from functools import partial
from string import Template

from django.conf import settings
from django.db import transaction

from .models import (
    NotificationTemplate,
    Notification,
    NotificationChannel,
    NotificationStatus,
)

logger = logging.getLogger(__name__)


DEFAULT_TEMPLATES = {
    "payment_confirmed_customer": (
        "${store}: Payment of ${amount} ${currency} received for order #${order_number}. "
        "Your order is confirmed. Thank you for shopping with us!"
    ),
    "payment_failed_customer": (
        "${store}: Payment for order #${order_number} was not completed (${reason}). "
        "Please try again or contact support."
    ),
    "payment_received_admin": (
        "${store} Admin Alert: Order #${order_number} paid ${amount} ${currency} "
        "via mobile money. Ref: ${reference}. Customer: ${customer_phone}."
    ),
    "payment_refunded_customer": (
        "${store}: ${message} for order #${order_number} (${amount} ${currency})."
    ),
}


def _render(body_template: str, context: dict) -> str:
    """
    Safely render body using ${var} placeholders.
    """
    context = {"store": settings.PROJECT_NAME, **context}
    try:
        return Template(body_template).safe_substitute(**context)
    except (ValueError, KeyError):
        logger.exception("Failed to render notification template")
        return body_template


def _resolve_template(event_key: str):
    template = NotificationTemplate.objects.filter(key=event_key, is_active=True).first()
    if template:
        return template, template.body_template
    return None, DEFAULT_TEMPLATES.get(event_key, event_key)


def dispatch(notification_id: str):
    """
    Hands a committed outbox row to Celery. A broker outage leaves the row
    pending for redeliver_pending_notifications.
    """
    from .tasks import send_notification_task

    try:
        send_notification_task.delay(str(notification_id))
    except Exception:
        logger.exception("Could not enqueue notification %s; left pending", notification_id)


def notify(phone: str, event_key: str, context: dict | None = None, *, user=None, data: dict | None = None):
    """
    Main entry point for other apps.

    Example usage:
        notify(
            phone=order.customer_phone,
            event_key="payment_confirmed_customer",
            context={"order_number": order.order_number, "amount": "45000"},
        )

    Writes the Notification row in the caller's transaction and schedules
    delivery for after commit, so a rolled back state change never notifies.
    """
    if not phone:
        logger.info("Notification %s skipped: no phone number", event_key)
        return None

    template, body_template = _resolve_template(event_key)
    body = _render(body_template, context or {})

    notification = Notification.objects.create(
        user=user,
        phone=phone,
        event_key=event_key,
        template=template,
        channel=NotificationChannel.SMS,
        body=body,
        data=data or {},
        status=NotificationStatus.PENDING,
    )

    transaction.on_commit(partial(dispatch, notification.id))
    return notification


def notify_admins(event_key: str, context: dict | None = None, *, data: dict | None = None):
    return [
        notify(phone, event_key, context, data=data)
        for phone in settings.ADMIN_NOTIFICATION_PHONES
        if phone
    ]
