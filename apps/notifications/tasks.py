import logging
from datetime import timedelta

from celery import shared_task
from django.db import transaction
from django.utils import timezone
from django.conf import settings
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from .models import Notification, NotificationStatus

logger = logging.getLogger(__name__)

REDELIVERY_GRACE = timedelta(minutes=5)

# First try plus Celery retries; shared with the outbox sweep
MAX_DELIVERY_ATTEMPTS = 4


def _e164(phone: str) -> str:
    return phone if phone.startswith("+") else f"+{phone}"


def _send_sms_notification(notification: Notification) -> str:
    """
    Sends actual SMS using Twilio credentials from settings.
    Returns the message SID. Raises TwilioRestException on provider rejection.
    """
    account_sid = settings.TWILIO_ACCOUNT_SID
    auth_token = settings.TWILIO_AUTH_TOKEN
    from_number = settings.TWILIO_FROM_NUMBER

    if not all([account_sid, auth_token, from_number]):
        raise ValueError("Twilio credentials missing in settings")

    client = Client(account_sid, auth_token)
    message = client.messages.create(
        body=notification.body,
        from_=from_number,
        to=_e164(notification.phone),
    )
    logger.info(f"SMS sent to {notification.phone}. SID: {message.sid}")
    return message.sid


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def send_notification_task(self, notification_id: str):
    """
    Every try is counted on the row, including ones that end in a transient
    error. A row that reaches MAX_DELIVERY_ATTEMPTS is marked failed so the
    outbox sweep stops picking it up.
    """
    transient_error = None
    try:
        with transaction.atomic():
            # Lock the row to prevent double sends
            notification = Notification.objects.select_for_update().get(id=notification_id)

            if notification.status != NotificationStatus.PENDING:
                return

            notification.attempts += 1
            try:
                provider_id = _send_sms_notification(notification)
            except (TwilioRestException, ValueError) as e:
                # Permanent: bad number, unverified sender, missing config
                logger.error(f"SMS for notification {notification_id} failed: {e}")
                notification.status = NotificationStatus.FAILED
                notification.error_message = str(e)
                notification.save(update_fields=["status", "error_message", "attempts", "updated_at"])
                return
            except Exception as e:
                # Transient: provider unreachable. Saved here so the attempt survives the retry.
                transient_error = e
                notification.error_message = str(e)
                if notification.attempts >= MAX_DELIVERY_ATTEMPTS:
                    logger.error(
                        f"Giving up on notification {notification_id} after {notification.attempts} attempts: {e}"
                    )
                    notification.status = NotificationStatus.FAILED
                notification.save(update_fields=["status", "error_message", "attempts", "updated_at"])
            else:
                notification.provider_message_id = provider_id
                notification.status = NotificationStatus.SENT
                notification.error_message = ""
                notification.sent_at = timezone.now()
                notification.save(
                    update_fields=["provider_message_id", "status", "error_message", "sent_at", "attempts", "updated_at"]
                )

    except Notification.DoesNotExist:
        logger.error(f"Notification {notification_id} not found.")
        return

    if transient_error is not None and notification.status == NotificationStatus.PENDING:
        logger.warning(f"Notification {notification_id} attempt {notification.attempts} failed, retrying")
        raise self.retry(exc=transient_error)


@shared_task
def redeliver_pending_notifications():
    """
    Outbox sweep: re-enqueue rows whose post-commit dispatch never ran
    (broker down, worker crash).
    """
    cutoff = timezone.now() - REDELIVERY_GRACE
    stale_ids = list(
        Notification.objects.filter(
            status=NotificationStatus.PENDING,
            created_at__lt=cutoff,
            attempts__lt=MAX_DELIVERY_ATTEMPTS,
        ).values_list("id", flat=True)[:500]
    )
    for notification_id in stale_ids:
        send_notification_task.delay(str(notification_id))

    if stale_ids:
        logger.info("Re-enqueued %s pending notifications", len(stale_ids))
    return len(stale_ids)
