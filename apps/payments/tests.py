import hashlib
import json
import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest import skipUnless
from unittest.mock import patch, MagicMock

import requests
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase, APIClient

from apps.catalog.models import Product
from apps.notifications.models import Notification
from apps.orders.models import Order
from apps.orders.services import OrderService
from .exceptions import TransientGatewayError, InvalidGatewayResponse, RefundIneligible
from .gateway import (
    Accepted, Rejected, Malformed, GatewayStatus, IntouchPayClient,
    generate_transaction_id, format_timestamp, sign_request, format_amount, parse_payment_response,
)
from .models import Payment, PaymentStatus, CallbackLog
from .reconciliation import reconcile, handle_callback
from .services import PaymentService
from .tasks import expire_stale_payments
from .views import PaymentCallbackView

User = get_user_model()

GATEWAY_POST = "apps.payments.gateway.requests.Session.post"

ACCEPTED = {"success": True, "status": "Pending", "responsecode": "1000", "message": "Transaction Pending"}


def fake_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    if isinstance(body, (dict, list)):
        response.json.return_value = body
        response.text = json.dumps(body)
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = body
    return response


def make_order(user, price="15000.00", quantity=3, stock=10, phone="250788123456"):
    product = Product.objects.create(
        sku_code=f"KITENGE-{Product.objects.count() + 1}",
        name="Kitenge Dress",
        price=Decimal(price),
        stock_quantity=stock,
    )
    return OrderService.create_order(
        user=user,
        items=[{"product_id": product.id, "quantity": quantity}],
        shipping_address={"city": "Kigali", "district": "Gasabo"},
        payment_method=Order.PaymentMethod.MOBILE_MONEY,
        customer_phone=phone,
    )


def callback_body(transaction_id, responsecode="01", status_text="Successfully", statusdesc="Successfully Processed Transaction"):
    return {
        "jsonpayload": {
            "requesttransactionid": transaction_id,
            "transactionid": "GW-884422",
            "responsecode": responsecode,
            "status": status_text,
            "statusdesc": statusdesc,
            "referenceno": "REF-31337",
        }
    }


class GatewayHelperTests(SimpleTestCase):
    def test_signature_is_sha256_of_concatenated_fields(self):
        expected = hashlib.sha256(b"egura.ltd250220000148s3cr3t20250101120000").hexdigest()
        self.assertEqual(sign_request("egura.ltd", "250220000148", "s3cr3t", "20250101120000"), expected)

    def test_signature_is_deterministic(self):
        first = sign_request("u", "a", "p", "20250101120000")
        self.assertEqual(first, sign_request("u", "a", "p", "20250101120000"))
        self.assertNotEqual(first, sign_request("u", "a", "p", "20250101120001"))

    def test_timestamp_is_utc_compact(self):
        moment = datetime(2025, 1, 2, 3, 4, 5, tzinfo=dt_timezone.utc)
        self.assertEqual(format_timestamp(moment), "20250102030405")

        kigali = datetime(2025, 1, 2, 14, 0, 0, tzinfo=dt_timezone(timedelta(hours=2)))
        self.assertEqual(format_timestamp(kigali), "20250102120000")

    @patch("apps.payments.gateway.random.uniform", return_value=1234567890123.7)
    @patch("apps.payments.gateway.time")
    def test_transaction_id_is_millis_plus_offset(self, mock_time, mock_uniform):
        mock_time.time.return_value = 1700000000.0
        self.assertEqual(generate_transaction_id(), "2934567890123")
        mock_uniform.assert_called_once_with(1_000_000_000_000, 9_999_999_999_999)

    def test_transaction_id_shape(self):
        txn = generate_transaction_id()
        self.assertTrue(txn.isdigit())
        self.assertGreaterEqual(len(txn), 13)

    def test_amount_formatting(self):
        self.assertEqual(format_amount(Decimal("45000.00")), "45000")
        self.assertEqual(format_amount(Decimal("100.50")), "100.50")


class ResponseParsingTests(SimpleTestCase):
    def test_pending_success_is_accepted(self):
        result = parse_payment_response("123", ACCEPTED)
        self.assertIsInstance(result, Accepted)
        self.assertEqual(result.transaction_id, "123")

    def test_unsuccessful_body_is_rejected(self):
        result = parse_payment_response("123", {"success": False, "message": "Invalid merchant account"})
        self.assertIsInstance(result, Rejected)
        self.assertEqual(result.reason, "Invalid merchant account")

    def test_success_without_pending_status_is_rejected(self):
        result = parse_payment_response("123", {"success": True, "status": "Failed"})
        self.assertIsInstance(result, Rejected)

    def test_truthy_success_string_is_not_accepted(self):
        result = parse_payment_response("123", {"success": "true", "status": "Pending"})
        self.assertIsInstance(result, Rejected)

    def test_non_object_bodies_are_malformed(self):
        self.assertIsInstance(parse_payment_response("123", "<html>Bad Gateway</html>"), Malformed)
        self.assertIsInstance(parse_payment_response("123", ["unexpected"]), Malformed)


class GatewayStatusTests(SimpleTestCase):
    def test_plain_body(self):
        outcome = GatewayStatus.from_payload({"responsecode": "01", "transactionid": "GW1"})
        self.assertTrue(outcome.is_success)
        self.assertEqual(outcome.transactionid, "GW1")

    def test_jsonpayload_wrapper_as_object_and_string(self):
        inner = {"responsecode": "02", "status": "Failed", "statusdesc": "Insufficient balance"}
        for payload in ({"jsonpayload": inner}, {"jsonpayload": json.dumps(inner)}):
            outcome = GatewayStatus.from_payload(payload)
            self.assertFalse(outcome.is_success)
            self.assertEqual(outcome.statusdesc, "Insufficient balance")

    def test_success_requires_exact_match(self):
        self.assertTrue(GatewayStatus.from_payload({"status": "Successfully"}).is_success)
        self.assertFalse(GatewayStatus.from_payload({"status": "Successful"}).is_success)
        self.assertFalse(GatewayStatus.from_payload({"responsecode": "1"}).is_success)
        self.assertFalse(GatewayStatus.from_payload({}).is_success)

    def test_pending_detection(self):
        self.assertTrue(GatewayStatus.from_payload({"status": "Pending"}).is_pending)
        self.assertTrue(GatewayStatus.from_payload({"responsecode": "1000"}).is_pending)
        self.assertFalse(GatewayStatus.from_payload({"responsecode": "01", "status": "Pending"}).is_pending)

    def test_invalid_wrapper_raises(self):
        with self.assertRaises(InvalidGatewayResponse):
            GatewayStatus.from_payload({"jsonpayload": "{not json"})
        with self.assertRaises(InvalidGatewayResponse):
            GatewayStatus.from_payload("plain text")


class IntouchPayClientTests(SimpleTestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = IntouchPayClient(
            username="testmerchant",
            account_no="250220000001",
            password="partner-secret",
            api_url="https://gateway.test/api/requestpayment/",
            status_url="https://gateway.test/api/gettransactionstatus/",
            callback_base_url="https://shop.test/",
            timeout=30,
            session=self.session,
        )

    def test_payment_request_envelope(self):
        payload = self.client.build_payment_request(Decimal("45000.00"), "250788123456", "1700000000000", "20250101120000")

        self.assertEqual(payload["username"], "testmerchant")
        self.assertEqual(payload["timestamp"], "20250101120000")
        self.assertEqual(payload["amount"], "45000")
        self.assertEqual(payload["mobilephone"], "250788123456")
        self.assertEqual(payload["mobilephoneno"], "250788123456")
        self.assertEqual(payload["requesttransactionid"], "1700000000000")
        self.assertEqual(payload["accountno"], "250220000001")
        self.assertEqual(payload["callbackurl"], "https://shop.test/api/v1/payments/callback/1700000000000/")
        self.assertEqual(
            payload["password"],
            sign_request("testmerchant", "250220000001", "partner-secret", "20250101120000"),
        )
        self.assertNotIn("partner-secret", json.dumps(payload))

    def test_request_uses_configured_timeout(self):
        self.session.post.return_value = fake_response(ACCEPTED)

        result = self.client.request_payment(Decimal("45000"), "250788123456", "1700000000000")

        self.assertIsInstance(result, Accepted)
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://gateway.test/api/requestpayment/")
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(kwargs["json"]["requesttransactionid"], "1700000000000")

    def test_network_errors_are_transient(self):
        self.session.post.side_effect = requests.ConnectionError("connection refused")
        with self.assertRaises(TransientGatewayError):
            self.client.request_payment(Decimal("45000"), "250788123456", "1700000000000")

        self.session.post.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(TransientGatewayError):
            self.client.request_payment(Decimal("45000"), "250788123456", "1700000000000")

    def test_http_errors_are_transient(self):
        self.session.post.return_value = fake_response({"message": "Service Unavailable"}, status_code=503)
        with self.assertRaises(TransientGatewayError):
            self.client.request_payment(Decimal("45000"), "250788123456", "1700000000000")

    def test_non_json_body_is_malformed(self):
        self.session.post.return_value = fake_response("<html>oops</html>")
        result = self.client.request_payment(Decimal("45000"), "250788123456", "1700000000000")
        self.assertIsInstance(result, Malformed)

    def test_query_status(self):
        self.session.post.return_value = fake_response(
            {"success": True, "responsecode": "01", "status": "Successfully", "transactionid": "GW9"}
        )
        outcome = self.client.query_status("1700000000000")

        self.assertTrue(outcome.is_success)
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://gateway.test/api/gettransactionstatus/")
        self.assertEqual(kwargs["json"]["requesttransactionid"], "1700000000000")

    def test_query_status_rejects_non_object(self):
        self.session.post.return_value = fake_response("garbage")
        with self.assertRaises(InvalidGatewayResponse):
            self.client.query_status("1700000000000")


class InitiatePaymentAPITests(APITestCase):
    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(username="aline", password="testpass123")
        self.client.force_authenticate(self.user)
        self.order = make_order(self.user)
        self.url = f"/api/v1/payments/orders/{self.order.id}/pay/"

    @patch(GATEWAY_POST)
    def test_momo_initiation_returns_pending(self, mock_post):
        mock_post.return_value = fake_response(ACCEPTED)

        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["message"], "Payment request sent. Please check your phone for confirmation.")

        self.order.refresh_from_db()
        self.assertEqual(body["transactionId"], self.order.external_id)
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(self.order.mobile_money["phoneNumber"], "250788123456")
        self.assertEqual(self.order.mobile_money["status"], "pending")

        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.transaction_id, self.order.external_id)
        self.assertEqual(payment.amount, self.order.total)

        sent = mock_post.call_args.kwargs["json"]
        self.assertEqual(sent["mobilephone"], "250788123456")
        self.assertEqual(sent["requesttransactionid"], self.order.external_id)
        self.assertEqual(sent["amount"], format_amount(self.order.total))

    @patch(GATEWAY_POST)
    def test_local_state_written_before_gateway_call(self, mock_post):
        seen = {}

        def respond(url, json=None, timeout=None):
            order = Order.objects.get(id=self.order.id)
            seen["external_id"] = order.external_id
            seen["payment"] = Payment.objects.filter(order=order, transaction_id=json["requesttransactionid"]).exists()
            return fake_response(ACCEPTED)

        mock_post.side_effect = respond
        self.client.post(self.url, {"type": "momo", "phone": "250788123456"}, format="json")

        self.order.refresh_from_db()
        self.assertEqual(seen["external_id"], self.order.external_id)
        self.assertTrue(seen["payment"])

    @patch(GATEWAY_POST)
    def test_callback_before_gateway_reply_is_kept(self, mock_post):
        def respond(url, json=None, timeout=None):
            txn = json["requesttransactionid"]
            handle_callback(txn, callback_body(txn))
            return fake_response(ACCEPTED)

        mock_post.side_effect = respond
        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(payment.mobile_money["status"], "success")
        self.assertIn("completedAt", payment.mobile_money)
        self.assertEqual(payment.mobile_money["apiResponse"], ACCEPTED)
        self.assertEqual(payment.gateway_response["responsecode"], "01")

        self.order.refresh_from_db()
        self.assertEqual(self.order.mobile_money["status"], "success")
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)

    @patch(GATEWAY_POST)
    def test_late_rejection_does_not_reopen_settled_payment(self, mock_post):
        def respond(url, json=None, timeout=None):
            txn = json["requesttransactionid"]
            handle_callback(txn, callback_body(txn))
            return fake_response({"success": False, "message": "Duplicate transaction"})

        mock_post.side_effect = respond
        self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(payment.mobile_money["status"], "success")
        self.assertEqual(payment.mobile_money["lastError"], "Duplicate transaction")
        self.assertEqual(payment.gateway_response["responsecode"], "01")

    @patch(GATEWAY_POST)
    def test_gateway_rejection_returns_502_and_leaves_order_pending(self, mock_post):
        mock_post.return_value = fake_response({"success": False, "message": "Invalid merchant account"})

        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["message"], "Mobile Money payment initiation failed")
        self.assertIn("Invalid merchant account", body["error"])

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertIsNotNone(self.order.external_id)

    @patch(GATEWAY_POST, side_effect=requests.Timeout("read timed out"))
    def test_gateway_timeout_returns_502(self, mock_post):
        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    @patch(GATEWAY_POST)
    def test_malformed_gateway_body_returns_502(self, mock_post):
        mock_post.return_value = fake_response("<html>Bad Gateway</html>")

        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertIn("lastError", payment.mobile_money)

    @patch(GATEWAY_POST)
    def test_retry_rearms_the_same_payment(self, mock_post):
        mock_post.return_value = fake_response({"success": False, "message": "Duplicate transaction"})
        self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")
        self.order.refresh_from_db()
        first_attempt = self.order.external_id

        mock_post.return_value = fake_response(ACCEPTED)
        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertNotEqual(self.order.external_id, first_attempt)
        self.assertEqual(Payment.objects.filter(order=self.order).count(), 1)
        self.assertEqual(Payment.objects.get(order=self.order).transaction_id, self.order.external_id)

    @patch(GATEWAY_POST)
    def test_non_mtn_number_is_rejected(self, mock_post):
        response = self.client.post(self.url, {"type": "momo", "phone": "0728123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["code"], "invalid_phone")
        mock_post.assert_not_called()

    def test_phone_is_required_for_momo(self):
        response = self.client.post(self.url, {"type": "momo"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_other_customers_order_is_not_found(self):
        other = User.objects.create_user(username="eric", password="testpass123")
        self.client.force_authenticate(other)

        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    @patch(GATEWAY_POST)
    def test_concurrent_initiation_is_rejected(self, mock_post):
        self.assertTrue(PaymentService.acquire_initiation_lock(self.order.id))

        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        mock_post.assert_not_called()

    @patch(GATEWAY_POST)
    def test_paid_order_cannot_be_charged_again(self, mock_post):
        Order.objects.filter(id=self.order.id).update(
            status=Order.Status.CONFIRMED, payment_status=Order.PaymentStatus.COMPLETED
        )

        response = self.client.post(self.url, {"type": "momo", "phone": "0788123456"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["code"], "order_not_payable")
        mock_post.assert_not_called()

    def test_cash_on_delivery_confirms_order(self):
        response = self.client.post(
            self.url,
            {"type": "cash_on_delivery", "changeRequired": "5000", "deliveryInstructions": "Call at the gate"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(self.order.payment_method, Order.PaymentMethod.CASH_ON_DELIVERY)

        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.payment_method, Order.PaymentMethod.CASH_ON_DELIVERY)
        self.assertEqual(payment.cash_on_delivery["deliveryInstructions"], "Call at the gate")
        self.assertEqual(self.order.status_history.last().status, Order.Status.CONFIRMED)


class PendingOrderMixin:
    """Creates an order with an accepted mobile money request."""

    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(username="aline", password="testpass123")
        self.order = make_order(self.user)
        self.product = self.order.items.first().product
        with patch(GATEWAY_POST, return_value=fake_response(ACCEPTED)):
            PaymentService.initiate_mobile_money(self.order, "0788123456", user=self.user)
        self.order.refresh_from_db()
        self.txn = self.order.external_id
        self.callback_url = f"/api/v1/payments/callback/{self.txn}/"
        self.gateway = APIClient()


class CallbackTests(PendingOrderMixin, APITestCase):
    def _post(self, body, **kwargs):
        kwargs.setdefault("format", "json")
        return self.gateway.post(self.callback_url, body, **kwargs)

    def test_success_callback_confirms_order(self):
        response = self._post(callback_body(self.txn))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"message": "success", "success": True, "request_id": self.txn})

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)
        self.assertEqual(self.order.mobile_money["status"], "success")
        self.assertEqual(self.order.mobile_money["transactionId"], "GW-884422")
        self.assertEqual(self.order.mobile_money["referenceNo"], "REF-31337")
        self.assertIn("completedAt", self.order.mobile_money)
        self.assertEqual(self.order.mobile_money["phoneNumber"], "250788123456")

        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertIsNotNone(payment.completed_at)
        self.assertEqual(payment.gateway_transaction_id, "GW-884422")

        statuses = list(self.order.status_history.values_list("status", flat=True))
        self.assertEqual(statuses, [Order.Status.PENDING, Order.Status.CONFIRMED])

        events = sorted(Notification.objects.values_list("event_key", "phone"))
        self.assertEqual(events, [
            ("payment_confirmed_customer", "250788123456"),
            ("payment_received_admin", "250788000111"),
        ])

    def test_duplicate_success_is_a_no_op(self):
        self._post(callback_body(self.txn))
        self.order.refresh_from_db()
        payment = Payment.objects.get(order=self.order)
        snapshot = (
            self.order.updated_at, dict(self.order.mobile_money), self.order.status_history.count(),
            payment.updated_at, len(payment.status_history), Notification.objects.count(),
        )

        response = self._post(callback_body(self.txn))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["message"], "success")
        self.order.refresh_from_db()
        payment.refresh_from_db()
        self.assertEqual(snapshot, (
            self.order.updated_at, self.order.mobile_money, self.order.status_history.count(),
            payment.updated_at, len(payment.status_history), Notification.objects.count(),
        ))
        outcomes = list(CallbackLog.objects.order_by("created_at").values_list("outcome", flat=True))
        self.assertEqual(outcomes, [CallbackLog.Outcome.APPLIED, CallbackLog.Outcome.DUPLICATE])

    def test_gateway_retry_burst_is_never_throttled(self):
        self.assertEqual(PaymentCallbackView().get_throttles(), [])

        codes = {self._post(callback_body(self.txn)).status_code for _ in range(5)}

        self.assertEqual(codes, {status.HTTP_200_OK})
        self.assertEqual(CallbackLog.objects.filter(transaction_id=self.txn).count(), 5)

    def test_failure_callback_cancels_order(self):
        response = self._post(callback_body(self.txn, "02", "Failed", "Insufficient balance"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"message": "failed", "success": False, "request_id": self.txn})

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.order.mobile_money["status"], "failed")
        self.assertEqual(self.order.mobile_money["responseMessage"], "Insufficient balance")
        self.assertIn("failedAt", self.order.mobile_money)
        self.assertEqual(Payment.objects.get(order=self.order).status, PaymentStatus.FAILED)

        self.assertEqual(list(Notification.objects.values_list("event_key", flat=True)), ["payment_failed_customer"])

        # Stock is not returned unless configured
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 7)

    @override_settings(RESTOCK_ON_PAYMENT_FAILURE=True)
    def test_failure_restocks_when_enabled(self):
        self._post(callback_body(self.txn, "02", "Failed", "Insufficient balance"))

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

    def test_unknown_transaction_returns_404(self):
        response = self.gateway.post(
            "/api/v1/payments/callback/999999999/", callback_body("999999999")["jsonpayload"], format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json(), {"message": "failed", "success": False, "request_id": "999999999"})
        self.assertEqual(CallbackLog.objects.get().outcome, CallbackLog.Outcome.NOT_FOUND)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    def test_conflicting_result_after_success_is_ignored(self):
        self._post(callback_body(self.txn))
        response = self._post(callback_body(self.txn, "02", "Failed", "Timeout"))

        self.assertEqual(response.json()["success"], True)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CONFIRMED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)

    def test_failed_payment_stays_failed(self):
        self._post(callback_body(self.txn, "02", "Failed", "Timeout"))
        response = self._post(callback_body(self.txn))

        self.assertEqual(response.json()["success"], False)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertFalse(Notification.objects.filter(event_key="payment_confirmed_customer").exists())

    def test_stringified_jsonpayload(self):
        body = {"jsonpayload": json.dumps(callback_body(self.txn)["jsonpayload"])}
        response = self._post(body)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)

    def test_form_encoded_callback(self):
        response = self.gateway.post(self.callback_url, {"status": "Successfully", "transactionid": "GW1"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)

    def test_near_miss_status_is_a_failure(self):
        self._post({"status": "Successful", "responsecode": "00"})

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)

    def test_notifications_dispatch_after_commit(self):
        with patch("apps.notifications.tasks.send_notification_task.delay") as mock_delay:
            with self.captureOnCommitCallbacks(execute=True):
                reconcile(self.txn, GatewayStatus.from_payload(callback_body(self.txn)))

        self.assertEqual(mock_delay.call_count, 2)

    @override_settings(TWILIO_ACCOUNT_SID="AC123", TWILIO_AUTH_TOKEN="token", TWILIO_FROM_NUMBER="+15005550006")
    @patch("apps.notifications.tasks.Client")
    def test_customer_sms_dials_international_number(self, mock_client):
        mock_client.return_value.messages.create.return_value.sid = "SM123"
        order = make_order(self.user, phone="0788123456")
        with patch(GATEWAY_POST, return_value=fake_response(ACCEPTED)):
            PaymentService.initiate_mobile_money(order, "0788123456", user=self.user)
        order.refresh_from_db()

        with self.captureOnCommitCallbacks(execute=True):
            self.gateway.post(
                f"/api/v1/payments/callback/{order.external_id}/",
                callback_body(order.external_id),
                format="json",
            )

        customer = Notification.objects.get(event_key="payment_confirmed_customer")
        self.assertEqual(customer.phone, "250788123456")
        dialled = [c.kwargs["to"] for c in mock_client.return_value.messages.create.call_args_list]
        self.assertIn("+250788123456", dialled)
        customer.refresh_from_db()
        self.assertEqual(customer.status, "sent")

    def test_cancelled_order_ignores_late_success(self):
        OrderService.cancel_order(self.order.id, reason="Changed my mind")
        response = self._post(callback_body(self.txn))

        self.assertEqual(response.json()["success"], False)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(Payment.objects.get(order=self.order).status, PaymentStatus.FAILED)


@skipUnless(connection.vendor == "postgresql", "row locks need a server database")
class ConcurrentReconciliationTests(TransactionTestCase):
    def test_conflicting_results_apply_exactly_once(self):
        user = User.objects.create_user(username="aline", password="testpass123")
        order = make_order(user)
        with patch(GATEWAY_POST, return_value=fake_response(ACCEPTED)):
            PaymentService.initiate_mobile_money(order, "0788123456", user=user)
        order.refresh_from_db()

        barrier = threading.Barrier(2)
        results = []

        def worker(payload):
            try:
                barrier.wait()
                results.append(reconcile(order.external_id, GatewayStatus.from_payload(payload)))
            finally:
                connection.close()

        threads = [
            threading.Thread(target=worker, args=({"responsecode": "01"},)),
            threading.Thread(target=worker, args=({"responsecode": "02", "statusdesc": "Timeout"},)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sum(r.applied for r in results), 1)
        self.assertEqual(sum(r.duplicate for r in results), 1)
        winner = next(r for r in results if r.applied)
        order.refresh_from_db()
        expected = Order.PaymentStatus.COMPLETED if winner.succeeded else Order.PaymentStatus.FAILED
        self.assertEqual(order.payment_status, expected)
        self.assertEqual(order.status_history.count(), 2)


class VerifyPaymentTests(PendingOrderMixin, APITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.user)
        self.url = f"/api/v1/payments/verify/{self.txn}/"

    @patch(GATEWAY_POST)
    def test_pending_result_changes_nothing(self, mock_post):
        mock_post.return_value = fake_response({"success": True, "status": "Pending", "responsecode": "1000"})

        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "pending")
        self.assertFalse(response.json()["applied"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    @patch(GATEWAY_POST)
    def test_successful_result_is_reconciled(self, mock_post):
        mock_post.return_value = fake_response(
            {"success": True, "responsecode": "01", "status": "Successfully", "transactionid": "GW5"}
        )

        response = self.client.get(self.url)

        self.assertEqual(response.json()["status"], "success")
        self.assertTrue(response.json()["applied"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status_history.last().updated_by, CallbackLog.Source.VERIFY)

    @patch(GATEWAY_POST, side_effect=requests.ConnectionError("down"))
    def test_gateway_outage_is_502(self, mock_post):
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(response.json()["code"], "gateway_unavailable")

    def test_unknown_transaction_is_404(self):
        response = self.client.get("/api/v1/payments/verify/123456/")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class ExpireStalePaymentsTests(PendingOrderMixin, TestCase):
    def _age_payment(self, minutes=120):
        Payment.objects.filter(order=self.order).update(initiated_at=timezone.now() - timedelta(minutes=minutes))

    @patch(GATEWAY_POST)
    def test_disabled_by_default(self, mock_post):
        self._age_payment()
        self.assertEqual(expire_stale_payments(), 0)
        mock_post.assert_not_called()

    @override_settings(PAYMENT_PENDING_EXPIRY_MINUTES=30)
    @patch(GATEWAY_POST)
    def test_still_pending_payment_expires(self, mock_post):
        mock_post.return_value = fake_response({"success": True, "status": "Pending", "responsecode": "1000"})
        self._age_payment()

        self.assertEqual(expire_stale_payments(), 1)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.mobile_money["responseMessage"], "Payment expired")
        self.assertTrue(CallbackLog.objects.filter(source=CallbackLog.Source.EXPIRY).exists())

    @override_settings(PAYMENT_PENDING_EXPIRY_MINUTES=30)
    @patch(GATEWAY_POST)
    def test_late_success_found_by_sweep(self, mock_post):
        mock_post.return_value = fake_response({"success": True, "responsecode": "01", "status": "Successfully"})
        self._age_payment()

        expire_stale_payments()

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)

    @override_settings(PAYMENT_PENDING_EXPIRY_MINUTES=30)
    @patch(GATEWAY_POST, side_effect=requests.ConnectionError("down"))
    def test_gateway_outage_leaves_payment_pending(self, mock_post):
        self._age_payment()

        self.assertEqual(expire_stale_payments(), 0)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    @override_settings(PAYMENT_PENDING_EXPIRY_MINUTES=30)
    @patch(GATEWAY_POST)
    def test_recent_payments_are_left_alone(self, mock_post):
        self._age_payment(minutes=5)

        self.assertEqual(expire_stale_payments(), 0)
        mock_post.assert_not_called()


class RefundTests(PendingOrderMixin, APITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.user)
        self.payment = Payment.objects.get(order=self.order)
        self.url = f"/api/v1/payments/{self.payment.id}/refund/"

    def _complete(self):
        reconcile(self.txn, GatewayStatus.from_payload({"responsecode": "01"}))

    def test_pending_payment_cannot_be_refunded(self):
        response = self.client.post(self.url, {"reason": "Changed my mind"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["error"], "Payment must be completed to be refunded")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)
        self.assertIsNone(self.payment.refunded_at)

    def test_mobile_money_refund(self):
        self._complete()

        response = self.client.post(self.url, {"reason": "Wrong size"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["message"], "Refund processed to mobile money account")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(self.payment.refund_reason, "Wrong size")
        self.assertEqual(self.payment.status_history[-1]["status"], PaymentStatus.REFUNDED)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.RETURNED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.order.status_history.last().status, Order.Status.RETURNED)

    def test_refund_is_not_repeatable(self):
        self._complete()
        PaymentService.refund(self.payment.id, "Wrong size")

        with self.assertRaises(RefundIneligible):
            PaymentService.refund(self.payment.id, "Again")

    def test_refunded_payment_ignores_late_callbacks(self):
        self._complete()
        PaymentService.refund(self.payment.id, "Wrong size")

        result = reconcile(self.txn, GatewayStatus.from_payload({"responsecode": "01"}))

        self.assertFalse(result.applied)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)

    def test_cash_on_delivery_refund(self):
        order = make_order(self.user)
        PaymentService.process_cash_on_delivery(order)
        OrderService.update_status(order.id, Order.Status.SHIPPED)
        OrderService.update_status(order.id, Order.Status.DELIVERED)
        payment = Payment.objects.get(order=order)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)

        result = PaymentService.refund(payment.id, "Damaged item", requested_by="admin")

        self.assertTrue(result["success"])
        self.assertEqual(result["message"], "Refund will be processed via bank transfer or store credit")
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.RETURNED)

    def test_unsupported_method_is_not_refunded(self):
        order = make_order(self.user)
        payment = Payment.objects.create(
            order=order, user=self.user, amount=order.total,
            payment_method=Order.PaymentMethod.CARD, status=PaymentStatus.COMPLETED,
        )

        result = PaymentService.refund(payment.id, "Test")

        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "Refund method not supported")
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)


class PaymentQueryAPITests(PendingOrderMixin, APITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.user)

    def test_order_payment_status(self):
        response = self.client.get(f"/api/v1/payments/orders/{self.order.id}/status/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual(body["paymentStatus"], "pending")
        self.assertEqual(body["mobileMoney"]["externalId"], self.txn)
        self.assertEqual(body["payment"]["status"], "pending")

    def test_list_is_scoped_and_filterable(self):
        other = User.objects.create_user(username="eric", password="testpass123")
        make_order(other)

        response = self.client.get("/api/v1/payments/")
        self.assertEqual(response.json()["count"], 1)

        response = self.client.get("/api/v1/payments/", {"status": "completed"})
        self.assertEqual(response.json()["count"], 0)
