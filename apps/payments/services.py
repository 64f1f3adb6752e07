import logging

from django.conf import settings
from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.orders.models import Order
from apps.orders.services import OrderService
from apps.notifications.services import notify
from apps.utils.exceptions import BusinessLogicException
from apps.utils.validators import normalize_mtn_phone
from .exceptions import (
    PaymentProcessingFailed,
    InvalidGatewayResponse,
    RefundIneligible,
    InvalidPhoneNumber,
)
from .gateway import IntouchPayClient, Accepted, Malformed, generate_transaction_id, format_amount
from .models import Payment, PaymentStatus, PaymentMethod

logger = logging.getLogger(__name__)

PAYMENT_REQUEST_SENT = "Payment request sent. Please check your phone for confirmation."

REFUND_MESSAGES = {
    PaymentMethod.MOBILE_MONEY: "Refund processed to mobile money account",
    PaymentMethod.MOMO_PAY: "Refund processed to MOMO Pay account",
    PaymentMethod.CASH_ON_DELIVERY: "Refund will be processed via bank transfer or store credit",
}

# Payment JSON field holding the method specific sub-record
SUB_RECORD_FIELDS = {
    PaymentMethod.MOBILE_MONEY: "mobile_money",
    PaymentMethod.MOMO_PAY: "momo_pay",
    PaymentMethod.CASH_ON_DELIVERY: "cash_on_delivery",
}


def sub_record_field(payment) -> str:
    return SUB_RECORD_FIELDS.get(payment.payment_method, "mobile_money")


class PaymentService:
    """
    Service to handle Payment Lifecycle.
    Gateway results are applied by apps.payments.reconciliation.
    """

    @staticmethod
    def get_gateway_client():
        return IntouchPayClient.from_settings()

    # --- Double-submit guard ---

    @staticmethod
    def _lock_key(order_id) -> str:
        return f"payment_initiation_{order_id}"

    @staticmethod
    def acquire_initiation_lock(order_id) -> bool:
        return cache.add(PaymentService._lock_key(order_id), "locked", timeout=settings.PAYMENT_INITIATION_LOCK_TTL)

    @staticmethod
    def release_initiation_lock(order_id):
        cache.delete(PaymentService._lock_key(order_id))

    # --- Mobile money ---

    @staticmethod
    def _arm_payment(order, method, user=None, transaction_id=None, sub_record=None, note=""):
        """
        Creates the order's Payment or re-arms a non-terminal one for a new attempt.
        Caller holds the order row lock.
        """
        payment = Payment.objects.select_for_update().filter(order=order).first()
        if payment is None:
            payment = Payment(order=order, user=order.user or user)
        elif payment.is_terminal:
            raise BusinessLogicException(
                f"Payment already {payment.status} for this order.", code="payment_terminal"
            )

        payment.amount = order.total
        payment.currency = order.currency
        payment.payment_method = method
        payment.transaction_id = transaction_id
        payment.initiated_at = timezone.now()
        if sub_record is not None:
            setattr(payment, SUB_RECORD_FIELDS[method], sub_record)
        payment.record_status(PaymentStatus.PENDING, note=note)
        payment.save()
        return payment

    @staticmethod
    def initiate_mobile_money(order, phone, user=None, method=PaymentMethod.MOBILE_MONEY) -> dict:
        """
        Local state is committed before the gateway is called: a callback can
        arrive before the HTTP response and must find the order by external_id.
        """
        try:
            msisdn = normalize_mtn_phone(phone)
        except ValueError as e:
            raise InvalidPhoneNumber(str(e))

        transaction_id = generate_transaction_id()
        started_at = timezone.now().isoformat()
        mirror = {
            "provider": "MTN",
            "phoneNumber": msisdn,
            "externalId": transaction_id,
            "transactionId": None,
            "status": "pending",
            "initiatedAt": started_at,
        }

        try:
            with transaction.atomic():
                order = Order.objects.select_for_update().get(pk=order.pk)
                if not order.is_payable:
                    raise BusinessLogicException(
                        f"Order is not in a payable state: {order.status}/{order.payment_status}",
                        code="order_not_payable",
                    )

                payment = PaymentService._arm_payment(
                    order, method, user=user, transaction_id=transaction_id, sub_record=dict(mirror),
                    note=f"Payment request {transaction_id} initiated",
                )

                order.external_id = transaction_id
                order.payment_status = Order.PaymentStatus.PENDING
                order.payment_method = method
                order.mobile_money = mirror
                order.save(update_fields=["external_id", "payment_status", "payment_method", "mobile_money", "updated_at"])
        except IntegrityError:
            logger.warning("Transaction id collision for order %s", order.pk)
            raise PaymentProcessingFailed("Could not allocate a transaction id, please retry")

        client = PaymentService.get_gateway_client()
        try:
            result = client.request_payment(order.total, msisdn, transaction_id)
        except PaymentProcessingFailed as e:
            PaymentService._record_initiation_error(payment, transaction_id, e.message, e.raw)
            raise

        if isinstance(result, Accepted):
            PaymentService._store_gateway_reply(payment, transaction_id, {"apiResponse": result.raw}, result.raw)

            logger.info(
                "Payment request accepted for order %s", order.order_number,
                extra={"order_id": str(order.id), "transaction_id": transaction_id},
            )
            return {
                "transactionId": transaction_id,
                "status": "pending",
                "message": PAYMENT_REQUEST_SENT,
            }

        if isinstance(result, Malformed):
            logger.error(
                "Malformed gateway response for order %s", order.order_number,
                extra={"transaction_id": transaction_id, "payload": str(result.raw)[:1000]},
            )
            PaymentService._record_initiation_error(payment, transaction_id, "Malformed gateway response", result.raw)
            raise InvalidGatewayResponse(raw=result.raw)

        logger.warning(
            "Payment request rejected for order %s: %s", order.order_number, result.reason,
            extra={"transaction_id": transaction_id},
        )
        PaymentService._record_initiation_error(payment, transaction_id, result.reason, result.raw)
        raise PaymentProcessingFailed(f"Payment initialization failed: {result.reason}", raw=result.raw)

    @staticmethod
    def _store_gateway_reply(payment, transaction_id, extra: dict, raw):
        """
        Merges the initiation reply into the current sub-record. The callback
        may already have settled the payment while the request was in flight,
        so the row is re-read under lock and a settled result is never
        overwritten.
        """
        with transaction.atomic():
            Order.objects.select_for_update().filter(pk=payment.order_id).first()
            current = Payment.objects.select_for_update().get(pk=payment.pk)

            if current.transaction_id != transaction_id:
                logger.info(
                    "Payment %s re-armed since attempt %s; reply not stored", current.reference_number, transaction_id,
                )
                return current

            field = sub_record_field(current)
            setattr(current, field, {**getattr(current, field), **extra})
            update_fields = [field, "updated_at"]
            if not current.is_terminal:
                current.gateway_response = raw
                update_fields.append("gateway_response")
            current.save(update_fields=update_fields)
        return current

    @staticmethod
    def _record_initiation_error(payment, transaction_id, message, raw):
        """
        Keeps the failed attempt on record. Payment and order stay pending so
        the customer can retry.
        """
        raw = raw if isinstance(raw, dict) else {"raw": str(raw)[:1000] if raw else ""}
        return PaymentService._store_gateway_reply(payment, transaction_id, {"lastError": message}, raw)

    # --- Cash on delivery ---

    @staticmethod
    @transaction.atomic
    def process_cash_on_delivery(order, change_required=0, delivery_instructions="", user=None):
        order = Order.objects.select_for_update().get(pk=order.pk)
        if not order.is_payable:
            raise BusinessLogicException(
                f"Order is not in a payable state: {order.status}/{order.payment_status}",
                code="order_not_payable",
            )

        payment = PaymentService._arm_payment(
            order,
            PaymentMethod.CASH_ON_DELIVERY,
            user=user,
            sub_record={
                "status": "pending",
                "changeRequired": str(change_required or 0),
                "deliveryInstructions": delivery_instructions,
            },
            note="Cash on delivery selected",
        )

        order.payment_method = PaymentMethod.CASH_ON_DELIVERY
        order.payment_status = Order.PaymentStatus.PENDING
        OrderService.record_status(order, Order.Status.CONFIRMED, "Cash on delivery order confirmed", save=False)
        order.save(update_fields=["status", "payment_method", "payment_status", "updated_at"])

        logger.info("COD payment %s created for order %s", payment.reference_number, order.order_number)
        return payment

    @staticmethod
    def collect_cash_on_delivery(order, updated_by="system"):
        """
        Cash handed over at delivery. Caller holds the order row lock.
        """
        payment = Payment.objects.select_for_update().filter(
            order=order, payment_method=PaymentMethod.CASH_ON_DELIVERY, status=PaymentStatus.PENDING
        ).first()
        if payment is None:
            return None

        now = timezone.now()
        payment.record_status(PaymentStatus.COMPLETED, note="Cash collected on delivery", updated_by=updated_by)
        payment.completed_at = now
        payment.cash_on_delivery = {**payment.cash_on_delivery, "status": "collected", "collectedAt": now.isoformat()}
        payment.save()

        order.payment_status = Order.PaymentStatus.COMPLETED
        order.save(update_fields=["payment_status", "updated_at"])
        return payment

    @staticmethod
    def close_pending_payment(order, reason=""):
        """
        Closes an open attempt as failed when the order is cancelled. Caller
        holds the order row lock.
        """
        payment = Payment.objects.select_for_update().filter(order=order, status=PaymentStatus.PENDING).first()
        if payment is None:
            return None

        now = timezone.now()
        payment.record_status(PaymentStatus.FAILED, note=reason)
        payment.failed_at = now
        field = sub_record_field(payment)
        setattr(payment, field, {**getattr(payment, field), "status": "failed", "failedAt": now.isoformat()})
        payment.save()

        order.payment_status = Order.PaymentStatus.FAILED
        update_fields = ["payment_status", "updated_at"]
        if order.mobile_money:
            order.mobile_money = {**order.mobile_money, "status": "failed", "responseMessage": reason, "failedAt": now.isoformat()}
            update_fields.append("mobile_money")
        order.save(update_fields=update_fields)
        return payment

    # --- Refunds ---

    @staticmethod
    def refund(payment_id, reason="", requested_by="user") -> dict:
        """
        Simulated refund: no money moves through the gateway. Records the
        refund and returns the customer-facing message for the method.
        """
        order_id = Payment.objects.values_list("order_id", flat=True).get(id=payment_id)

        with transaction.atomic():
            # Same lock order as reconciliation: order first, then payment
            order = Order.objects.select_for_update().get(id=order_id)
            payment = Payment.objects.select_for_update().get(id=payment_id)

            if payment.status != PaymentStatus.COMPLETED:
                raise RefundIneligible()

            message = REFUND_MESSAGES.get(payment.payment_method)
            if message is None:
                logger.warning("Refund requested for unsupported method %s", payment.payment_method)
                return {"success": False, "message": "Refund method not supported", "payment": payment}

            now = timezone.now()
            payment.record_status(PaymentStatus.REFUNDED, note=f"Refund: {reason}", updated_by=requested_by)
            payment.refunded_at = now
            payment.refund_reason = reason
            field = sub_record_field(payment)
            setattr(payment, field, {
                **getattr(payment, field),
                "refund": {"reason": reason, "refundedAt": now.isoformat(), "message": message},
            })
            payment.save()

            order.payment_status = Order.PaymentStatus.REFUNDED
            OrderService.record_status(order, Order.Status.RETURNED, f"Order refunded: {reason}", requested_by, save=False)
            order.save(update_fields=["status", "payment_status", "updated_at"])

            notify(
                order.customer_phone or order.mobile_money.get("phoneNumber", ""),
                "payment_refunded_customer",
                {
                    "order_number": order.order_number,
                    "amount": format_amount(payment.amount),
                    "currency": payment.currency,
                    "message": message,
                },
                user=order.user,
            )

        logger.info(
            "Payment %s refunded by %s", payment.reference_number, requested_by,
            extra={"payment_id": str(payment.id), "order_id": str(order.id)},
        )
        return {"success": True, "message": message, "payment": payment}

    @staticmethod
    def user_payments(user, status=None):
        qs = Payment.objects.filter(user=user).select_related("order")
        if status:
            qs = qs.filter(status=status)
        return qs
