# apps/orders/tests.py
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.contrib.auth import get_user_model

from rest_framework.test import APITestCase
from rest_framework import status

from apps.catalog.models import Product
from apps.orders.models import Order, OrderItem
from apps.orders.services import OrderService, calculate_charges
from apps.payments.models import Payment, PaymentStatus
from apps.payments.services import PaymentService
from apps.utils.exceptions import BusinessLogicException


User = get_user_model()


class ChargesTests(TestCase):
    def test_tax_and_flat_shipping_below_threshold(self):
        tax, shipping = calculate_charges(Decimal("45000.00"))
        self.assertEqual(tax, Decimal("8100.00"))
        self.assertEqual(shipping, Decimal("2000"))

    def test_free_shipping_at_threshold(self):
        tax, shipping = calculate_charges(Decimal("50000.00"))
        self.assertEqual(tax, Decimal("9000.00"))
        self.assertEqual(shipping, Decimal("0.00"))

    def test_empty_subtotal_has_no_charges(self):
        self.assertEqual(calculate_charges(Decimal("0.00")), (Decimal("0.00"), Decimal("0.00")))


class CreateOrderServiceTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="aline", password="testpass123")
        self.dress = Product.objects.create(
            sku_code="DRESS-KITENGE-M", name="Kitenge Dress", price=Decimal("15000.00"), stock_quantity=10
        )
        self.bag = Product.objects.create(
            sku_code="BAG-AGASEKE", name="Agaseke Bag", price=Decimal("10000.00"), stock_quantity=2
        )

    def _create(self, items):
        return OrderService.create_order(
            user=self.user,
            items=items,
            shipping_address={"city": "Kigali"},
            payment_method=Order.PaymentMethod.MOBILE_MONEY,
            customer_phone="250788123456",
        )

    def test_totals_and_initial_state(self):
        order = self._create([{"product_id": self.dress.id, "quantity": 3}])

        self.assertEqual(order.subtotal, Decimal("45000.00"))
        self.assertEqual(order.tax, Decimal("8100.00"))
        self.assertEqual(order.shipping_cost, Decimal("2000.00"))
        self.assertEqual(order.total, order.subtotal + order.tax + order.shipping_cost - order.discount)
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertTrue(order.order_number)
        self.assertEqual(order.reference_number, order.order_number)
        self.assertEqual(order.currency, "RWF")

        item = order.items.get()
        self.assertEqual(item.unit_price, Decimal("15000.00"))
        self.assertEqual(item.product_name, "Kitenge Dress")
        self.assertEqual(list(order.status_history.values_list("status", flat=True)), [Order.Status.PENDING])

    def test_stock_is_decremented(self):
        self._create([{"product_id": self.dress.id, "quantity": 3}])
        self.dress.refresh_from_db()
        self.assertEqual(self.dress.stock_quantity, 7)

    def test_insufficient_stock_rolls_back(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            self._create([
                {"product_id": self.dress.id, "quantity": 1},
                {"product_id": self.bag.id, "quantity": 5},
            ])

        self.assertEqual(ctx.exception.code, "insufficient_stock")
        self.assertFalse(Order.objects.exists())
        self.dress.refresh_from_db()
        self.assertEqual(self.dress.stock_quantity, 10)

    def test_inactive_product_is_rejected(self):
        self.bag.is_active = False
        self.bag.save()

        with self.assertRaises(BusinessLogicException) as ctx:
            self._create([{"product_id": self.bag.id, "quantity": 1}])
        self.assertEqual(ctx.exception.code, "product_unavailable")

    def test_local_phone_is_stored_in_international_form(self):
        order = OrderService.create_order(
            user=self.user,
            items=[{"product_id": self.dress.id, "quantity": 1}],
            shipping_address={},
            payment_method=Order.PaymentMethod.MOBILE_MONEY,
            customer_phone="0788 123 456",
        )
        self.assertEqual(order.customer_phone, "250788123456")

    def test_non_rwandan_phone_is_rejected(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.create_order(
                user=self.user,
                items=[{"product_id": self.dress.id, "quantity": 1}],
                shipping_address={},
                payment_method=Order.PaymentMethod.MOBILE_MONEY,
                customer_phone="+14155550100",
            )
        self.assertEqual(ctx.exception.code, "invalid_phone")
        self.assertFalse(Order.objects.exists())

    def test_empty_order_is_rejected(self):
        with self.assertRaises(BusinessLogicException):
            self._create([])

    def test_order_numbers_are_unique(self):
        first = self._create([{"product_id": self.dress.id, "quantity": 1}])
        second = self._create([{"product_id": self.dress.id, "quantity": 1}])
        self.assertNotEqual(first.order_number, second.order_number)

    def test_add_and_remove_item_keep_total_consistent(self):
        order = self._create([{"product_id": self.dress.id, "quantity": 3}])

        order = OrderService.add_item(order.id, self.bag.id, 1)
        self.assertEqual(order.subtotal, Decimal("55000.00"))
        self.assertEqual(order.shipping_cost, Decimal("0.00"))
        self.assertEqual(order.total, order.subtotal + order.tax + order.shipping_cost - order.discount)
        self.bag.refresh_from_db()
        self.assertEqual(self.bag.stock_quantity, 1)

        bag_item = order.items.get(product=self.bag)
        order = OrderService.remove_item(order.id, bag_item.id)
        self.assertEqual(order.subtotal, Decimal("45000.00"))
        self.assertEqual(order.total, Decimal("55100.00"))
        self.bag.refresh_from_db()
        self.assertEqual(self.bag.stock_quantity, 2)

    def test_items_locked_once_paid(self):
        order = self._create([{"product_id": self.dress.id, "quantity": 1}])
        Order.objects.filter(id=order.id).update(payment_status=Order.PaymentStatus.COMPLETED)

        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.add_item(order.id, self.bag.id, 1)
        self.assertEqual(ctx.exception.code, "order_locked")


class CancelOrderServiceTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="aline", password="testpass123")
        self.product = Product.objects.create(
            sku_code="DRESS-KITENGE-M", name="Kitenge Dress", price=Decimal("15000.00"), stock_quantity=10
        )
        self.order = OrderService.create_order(
            user=self.user,
            items=[{"product_id": self.product.id, "quantity": 2}],
            shipping_address={},
            payment_method=Order.PaymentMethod.MOBILE_MONEY,
        )

    def test_cancel_restocks_and_records_history(self):
        OrderService.cancel_order(self.order.id, reason="User changed mind")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        last = self.order.status_history.last()
        self.assertEqual(last.status, Order.Status.CANCELLED)
        self.assertIn("changed mind", last.note)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

    def test_cancel_closes_pending_payment(self):
        PaymentService._arm_payment(self.order, Order.PaymentMethod.MOBILE_MONEY, transaction_id="1234567890123")

        OrderService.cancel_order(self.order.id, reason="Changed my mind")

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(Payment.objects.get(order=self.order).status, PaymentStatus.FAILED)

    def test_cannot_cancel_shipped_order(self):
        Order.objects.filter(id=self.order.id).update(status=Order.Status.SHIPPED)

        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.cancel_order(self.order.id, reason="Too late")
        self.assertIn("Cannot cancel", ctx.exception.message)

    def test_paid_order_requires_refund(self):
        Order.objects.filter(id=self.order.id).update(
            status=Order.Status.CONFIRMED, payment_status=Order.PaymentStatus.COMPLETED
        )

        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.cancel_order(self.order.id)
        self.assertEqual(ctx.exception.code, "refund_required")


class FulfillmentTransitionTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="aline", password="testpass123")
        self.product = Product.objects.create(
            sku_code="DRESS-KITENGE-M", name="Kitenge Dress", price=Decimal("15000.00"), stock_quantity=10
        )
        self.order = OrderService.create_order(
            user=self.user,
            items=[{"product_id": self.product.id, "quantity": 1}],
            shipping_address={},
            payment_method=Order.PaymentMethod.MOBILE_MONEY,
        )

    def test_pending_order_cannot_ship(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.update_status(self.order.id, Order.Status.SHIPPED)
        self.assertEqual(ctx.exception.code, "invalid_transition")

    def test_confirmed_order_moves_through_fulfillment(self):
        Order.objects.filter(id=self.order.id).update(status=Order.Status.CONFIRMED)

        for next_status in (Order.Status.PROCESSING, Order.Status.SHIPPED, Order.Status.DELIVERED):
            OrderService.update_status(self.order.id, next_status, updated_by="staff")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DELIVERED)
        self.assertEqual(
            list(self.order.status_history.values_list("status", flat=True)),
            ["pending", "processing", "shipped", "delivered"],
        )

    def test_cash_on_delivery_is_collected_on_delivery(self):
        PaymentService.process_cash_on_delivery(self.order)
        OrderService.update_status(self.order.id, Order.Status.SHIPPED)
        OrderService.update_status(self.order.id, Order.Status.DELIVERED)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)
        payment = Payment.objects.get(order=self.order)
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(payment.cash_on_delivery["status"], "collected")


class OrderAPITests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="aline", password="testpass123")
        self.admin = User.objects.create_user(username="staff", password="testpass123", is_staff=True)
        self.product = Product.objects.create(
            sku_code="DRESS-KITENGE-M", name="Kitenge Dress", price=Decimal("15000.00"), stock_quantity=10
        )
        self.client.force_authenticate(self.user)

    def _create_via_api(self, quantity=3):
        return self.client.post(
            "/api/v1/orders/",
            {
                "items": [{"product_id": str(self.product.id), "quantity": quantity}],
                "shipping_address": {"city": "Kigali", "street": "KG 7 Ave"},
                "payment_method": "mobile_money",
                "customer_phone": "0788123456",
            },
            format="json",
        )

    def test_create_order(self):
        response = self._create_via_api()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["subtotal"], "45000.00")
        self.assertEqual(body["total"], "55100.00")
        self.assertEqual(body["customer_phone"], "250788123456")
        self.assertEqual(len(body["items"]), 1)
        self.assertEqual(len(body["status_history"]), 1)

    def test_create_requires_auth(self):
        self.client.force_authenticate(None)
        response = self._create_via_api()
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_insufficient_stock_is_400(self):
        response = self._create_via_api(quantity=50)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["code"], "insufficient_stock")

    def test_malformed_phone_is_400(self):
        response = self.client.post(
            "/api/v1/orders/",
            {"items": [{"product_id": str(self.product.id), "quantity": 1}], "customer_phone": "07-88"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("customer_phone", response.json())

    def test_customers_only_see_their_orders(self):
        self._create_via_api()
        other = User.objects.create_user(username="eric", password="testpass123")
        self.client.force_authenticate(other)

        response = self.client.get("/api/v1/orders/")
        self.assertEqual(response.json()["count"], 0)

        self.client.force_authenticate(self.admin)
        response = self.client.get("/api/v1/orders/")
        self.assertEqual(response.json()["count"], 1)

    def test_cancel_via_api(self):
        order_id = self._create_via_api().json()["id"]

        response = self.client.post(f"/api/v1/orders/{order_id}/cancel/", {"reason": "Wrong size"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "cancelled")
        self.assertEqual(response.json()["status_history"][-1]["updated_by"], "user")

    def test_status_update_is_staff_only(self):
        order_id = self._create_via_api().json()["id"]
        Order.objects.filter(id=order_id).update(status=Order.Status.CONFIRMED)

        response = self.client.post(f"/api/v1/orders/{order_id}/status/", {"status": "shipped"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.admin)
        response = self.client.post(f"/api/v1/orders/{order_id}/status/", {"status": "shipped"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "shipped")
        self.assertEqual(response.json()["status_history"][-1]["updated_by"], "staff")

    def test_illegal_status_update_is_400(self):
        order_id = self._create_via_api().json()["id"]
        self.client.force_authenticate(self.admin)

        response = self.client.post(f"/api/v1/orders/{order_id}/status/", {"status": "delivered"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["code"], "invalid_transition")

    @patch("apps.payments.gateway.requests.Session.post")
    def test_admin_bulk_clear(self, mock_post):
        self._create_via_api()
        self._create_via_api(quantity=1)

        response = self.client.post("/api/v1/orders/clear/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.admin)
        response = self.client.post("/api/v1/orders/clear/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"success": True, "deleted": 2})
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderItem.objects.exists())
        mock_post.assert_not_called()
