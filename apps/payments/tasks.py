import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from apps.utils.exceptions import BusinessLogicException
from .models import Payment, PaymentStatus, PaymentMethod, CallbackLog
from .reconciliation import verify_payment

logger = logging.getLogger(__name__)


@shared_task
def expire_stale_payments():
    """
    Polls the gateway for mobile money payments pending longer than
    PAYMENT_PENDING_EXPIRY_MINUTES. Still-pending ones are recorded as failed.
    Disabled when the setting is empty.
    """
    minutes = settings.PAYMENT_PENDING_EXPIRY_MINUTES
    if not minutes:
        return 0

    cutoff = timezone.now() - timedelta(minutes=minutes)
    stale_ids = list(
        Payment.objects.filter(
            status=PaymentStatus.PENDING,
            payment_method__in=[PaymentMethod.MOBILE_MONEY, PaymentMethod.MOMO_PAY],
            initiated_at__lt=cutoff,
            transaction_id__isnull=False,
        ).values_list("transaction_id", flat=True)
    )

    settled = 0
    for transaction_id in stale_ids:
        try:
            result = verify_payment(transaction_id, source=CallbackLog.Source.EXPIRY, expire_if_pending=True)
        except BusinessLogicException as e:
            # Gateway down or order gone: try again on the next run
            logger.warning(f"Expiry check skipped for {transaction_id}: {e.message}")
            continue
        if result["applied"]:
            settled += 1

    if stale_ids:
        logger.info(f"Expiry sweep: {settled}/{len(stale_ids)} stale payments settled")
    return settled
