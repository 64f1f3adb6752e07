"""
Applies gateway results (callbacks, manual verification, expiry sweep) to
the Payment and its Order.

Every result for a transaction id goes through `reconcile`, which takes the
Order row lock and then the Payment row lock, so results for the same id are
applied one at a time. Terminal states are sticky: once a payment is
completed, failed or refunded, later results are recorded and ignored.
"""
import dataclasses
import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.orders.models import Order
from apps.orders.services import OrderService
from apps.notifications.services import notify, notify_admins
from .exceptions import OrderNotFound, InvalidStateTransition, InvalidGatewayResponse
from .gateway import GatewayStatus, IntouchPayClient, format_amount
from .models import Payment, PaymentStatus, CallbackLog
from .services import sub_record_field

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"


@dataclass
class ReconciliationResult:
    order: Order
    payment: Payment
    outcome: str
    applied: bool
    duplicate: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS


def _stored_outcome(order, payment) -> str:
    paid = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
    if payment.status in paid or order.payment_status in paid:
        return SUCCESS
    return FAILED


def _adopt_payment(order) -> Payment:
    """
    Orders initiated before payments were tracked have no Payment row.
    """
    logger.warning("Order %s has no payment record; creating one", order.order_number)
    payment = Payment(
        order=order,
        user=order.user,
        amount=order.total,
        currency=order.currency,
        payment_method=order.payment_method,
        transaction_id=order.external_id,
        mobile_money=dict(order.mobile_money or {}),
    )
    payment.record_status(PaymentStatus.PENDING, note="Adopted from order")
    payment.save()
    return payment


def reconcile(transaction_id: str, outcome: GatewayStatus, source: str = CallbackLog.Source.CALLBACK) -> ReconciliationResult:
    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(external_id=transaction_id)
        except Order.DoesNotExist:
            raise OrderNotFound(f"No order for transaction {transaction_id}")

        payment = Payment.objects.select_for_update().filter(order=order).first()
        if payment is None:
            payment = _adopt_payment(order)

        if payment.is_terminal or order.is_payment_terminal:
            stored = _stored_outcome(order, payment)
            incoming = SUCCESS if outcome.is_success else FAILED
            err = InvalidStateTransition(
                f"Payment already {payment.status}; ignoring {incoming} result from {source}"
            )
            log_extra = {"transaction_id": transaction_id, "order_id": str(order.id), "source": source}
            if stored != incoming and incoming == SUCCESS:
                # Money may have been taken after we gave up on the attempt
                logger.error("%s. Manual review required.", err.message, extra=log_extra)
            elif stored != incoming:
                logger.warning(err.message, extra=log_extra)
            else:
                logger.info(err.message, extra=log_extra)
            return ReconciliationResult(order, payment, stored, applied=False, duplicate=True)

        now = timezone.now()
        if outcome.is_success:
            _apply_success(order, payment, outcome, source, now)
            result = ReconciliationResult(order, payment, SUCCESS, applied=True)
        else:
            _apply_failure(order, payment, outcome, source, now)
            result = ReconciliationResult(order, payment, FAILED, applied=True)

    logger.info(
        "Payment %s for order %s via %s", result.outcome, order.order_number, source,
        extra={"transaction_id": transaction_id, "order_id": str(order.id), "payment_id": str(payment.id)},
    )
    return result


def _result_fields(outcome: GatewayStatus, status: str, message: str) -> dict:
    return {
        "status": status,
        "transactionId": outcome.transactionid or None,
        "responseCode": outcome.responsecode,
        "responseMessage": outcome.statusdesc or message,
        "referenceNo": outcome.referenceno or None,
    }


def _apply_success(order, payment, outcome, source, now):
    fields = {**_result_fields(outcome, SUCCESS, "Payment successful"), "completedAt": now.isoformat()}

    payment.record_status(PaymentStatus.COMPLETED, note=fields["responseMessage"], updated_by=source)
    payment.completed_at = now
    payment.gateway_transaction_id = outcome.transactionid
    payment.gateway_response = outcome.raw
    field = sub_record_field(payment)
    setattr(payment, field, {**getattr(payment, field), **fields})
    payment.save()

    order.payment_status = Order.PaymentStatus.COMPLETED
    order.mobile_money = {**(order.mobile_money or {}), **fields}
    OrderService.record_status(order, Order.Status.CONFIRMED, "Payment received via mobile money", source, save=False)
    order.save(update_fields=["status", "payment_status", "mobile_money", "updated_at"])

    context = {
        "order_number": order.order_number,
        "amount": format_amount(payment.amount),
        "currency": payment.currency,
        "reference": outcome.referenceno or payment.reference_number,
        "customer_phone": _customer_phone(order),
    }
    notify(_customer_phone(order), "payment_confirmed_customer", context, user=order.user)
    notify_admins("payment_received_admin", context, data={"order_id": str(order.id)})


def _apply_failure(order, payment, outcome, source, now):
    fields = {**_result_fields(outcome, FAILED, "Payment failed"), "failedAt": now.isoformat()}

    payment.record_status(PaymentStatus.FAILED, note=fields["responseMessage"], updated_by=source)
    payment.failed_at = now
    payment.gateway_transaction_id = outcome.transactionid
    payment.gateway_response = outcome.raw
    field = sub_record_field(payment)
    setattr(payment, field, {**getattr(payment, field), **fields})
    payment.save()

    order.payment_status = Order.PaymentStatus.FAILED
    order.mobile_money = {**(order.mobile_money or {}), **fields}
    OrderService.record_status(
        order, Order.Status.CANCELLED, f"Payment failed: {fields['responseMessage']}", source, save=False
    )
    order.save(update_fields=["status", "payment_status", "mobile_money", "updated_at"])

    if settings.RESTOCK_ON_PAYMENT_FAILURE:
        OrderService.restore_stock(order)

    notify(
        _customer_phone(order),
        "payment_failed_customer",
        {"order_number": order.order_number, "reason": fields["responseMessage"]},
        user=order.user,
    )


def _customer_phone(order) -> str:
    return order.customer_phone or (order.mobile_money or {}).get("phoneNumber") or ""


def _envelope(success: bool, request_id: str) -> dict:
    return {
        "message": "success" if success else "failed",
        "success": success,
        "request_id": request_id,
    }


def _log(transaction_id, source, payload, outcome):
    if hasattr(payload, "dict"):
        payload = payload.dict()
    if not isinstance(payload, dict):
        payload = {"raw": str(payload)[:2000]}
    CallbackLog.objects.create(transaction_id=transaction_id, source=source, payload=payload, outcome=outcome)


def handle_callback(transaction_id: str, payload):
    """
    Gateway callback entry point. Returns (http_status, envelope); never raises.
    The transaction id in the URL is authoritative.
    """
    try:
        outcome = GatewayStatus.from_payload(payload)
    except InvalidGatewayResponse:
        logger.warning("Unparseable callback body", extra={"transaction_id": transaction_id, "payload": str(payload)[:1000]})
        _log(transaction_id, CallbackLog.Source.CALLBACK, payload, CallbackLog.Outcome.IGNORED)
        return 400, _envelope(False, transaction_id)

    request_id = outcome.requesttransactionid or transaction_id
    if outcome.requesttransactionid and outcome.requesttransactionid != transaction_id:
        logger.warning(
            "Callback body names transaction %s; using URL id", outcome.requesttransactionid,
            extra={"transaction_id": transaction_id},
        )

    try:
        result = reconcile(transaction_id, outcome, source=CallbackLog.Source.CALLBACK)
    except OrderNotFound:
        logger.warning("Callback for unknown transaction", extra={"transaction_id": transaction_id})
        _log(transaction_id, CallbackLog.Source.CALLBACK, outcome.raw, CallbackLog.Outcome.NOT_FOUND)
        return 404, _envelope(False, request_id)
    except Exception:
        logger.exception("Error processing callback", extra={"transaction_id": transaction_id})
        return 500, {"message": "Error processing callback", "success": False, "request_id": request_id}

    _log(
        transaction_id,
        CallbackLog.Source.CALLBACK,
        outcome.raw,
        CallbackLog.Outcome.DUPLICATE if result.duplicate else CallbackLog.Outcome.APPLIED,
    )
    return 200, _envelope(result.succeeded, request_id)


def verify_payment(transaction_id: str, source: str = CallbackLog.Source.VERIFY, expire_if_pending=False, client=None) -> dict:
    """
    Pulls the transaction status from the gateway. Pending results leave
    state untouched unless `expire_if_pending`, which records them as failed.
    """
    if not Order.objects.filter(external_id=transaction_id).exists():
        raise OrderNotFound(f"No order for transaction {transaction_id}")

    client = client or IntouchPayClient.from_settings()
    outcome = client.query_status(transaction_id)

    if outcome.is_pending:
        if not expire_if_pending:
            order = Order.objects.get(external_id=transaction_id)
            _log(transaction_id, source, outcome.raw, CallbackLog.Outcome.IGNORED)
            return {
                "transactionId": transaction_id,
                "status": "pending",
                "paymentStatus": order.payment_status,
                "orderStatus": order.status,
                "applied": False,
            }
        outcome = dataclasses.replace(outcome, responsecode="", status="Expired", statusdesc="Payment expired")

    result = reconcile(transaction_id, outcome, source=source)
    _log(
        transaction_id,
        source,
        outcome.raw,
        CallbackLog.Outcome.DUPLICATE if result.duplicate else CallbackLog.Outcome.APPLIED,
    )
    return {
        "transactionId": transaction_id,
        "status": result.outcome,
        "paymentStatus": result.order.payment_status,
        "orderStatus": result.order.status,
        "applied": result.applied,
    }
