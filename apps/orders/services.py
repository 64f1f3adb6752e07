import logging
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.db import transaction
from django.db.models import F

from apps.utils.exceptions import BusinessLogicException
from apps.utils.validators import normalize_rw_phone
from apps.catalog.models import Product
from .models import Order, OrderItem, OrderStatusHistory

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def calculate_charges(subtotal: Decimal):
    """
    Returns (tax, shipping_cost) for a given subtotal.
    VAT is applied on the item subtotal; shipping is flat below the threshold.
    """
    tax = (subtotal * settings.ORDER_TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    if subtotal >= settings.FREE_SHIPPING_THRESHOLD or subtotal == 0:
        shipping = Decimal("0.00")
    else:
        shipping = settings.FLAT_SHIPPING_COST
    return tax, shipping


class OrderService:

    # Fulfillment graph driven by staff. Payment transitions live in apps.payments.
    FULFILLMENT_TRANSITIONS = {
        Order.Status.CONFIRMED: {Order.Status.PROCESSING, Order.Status.SHIPPED},
        Order.Status.PROCESSING: {Order.Status.SHIPPED},
        Order.Status.SHIPPED: {Order.Status.DELIVERED},
        Order.Status.DELIVERED: {Order.Status.RETURNED},
    }

    NON_CANCELLABLE = (
        Order.Status.CANCELLED,
        Order.Status.SHIPPED,
        Order.Status.DELIVERED,
        Order.Status.RETURNED,
    )

    @staticmethod
    def create_order(user, items: list, shipping_address: dict, payment_method: str,
                     customer_phone: str = "", notes: str = ""):
        """
        Secure Order Creation:
        1. Lock products & price server-side (clients never send prices)
        2. Check and decrement stock
        3. Create order, items and the first history entry
        """
        if not items:
            raise BusinessLogicException("Order must contain at least one item.", code="empty_order")

        # Stored in international form; SMS delivery dials it as +2507...
        if customer_phone:
            try:
                customer_phone = normalize_rw_phone(customer_phone)
            except ValueError as e:
                raise BusinessLogicException(str(e), code="invalid_phone")

        with transaction.atomic():
            product_ids = [item["product_id"] for item in items]
            products = {
                p.id: p for p in Product.objects.select_for_update().filter(id__in=product_ids)
            }

            order = Order.objects.create(
                user=user,
                customer_phone=customer_phone,
                shipping_address=shipping_address or {},
                payment_method=payment_method,
                currency=settings.DEFAULT_CURRENCY,
                status=Order.Status.PENDING,
                payment_status=Order.PaymentStatus.PENDING,
                notes={"customer": notes} if notes else {},
            )

            order_items = []
            for item in items:
                qty = int(item["quantity"])
                product = products.get(item["product_id"])

                if not product or not product.is_active:
                    raise BusinessLogicException(
                        f"Item {item['product_id']} is no longer available.", code="product_unavailable"
                    )
                if qty < 1:
                    raise BusinessLogicException("Quantity must be at least 1.", code="invalid_quantity")
                if product.stock_quantity < qty:
                    raise BusinessLogicException(
                        f"Insufficient stock for {product.name}.", code="insufficient_stock"
                    )

                product.stock_quantity -= qty
                product.save(update_fields=["stock_quantity", "updated_at"])

                order_items.append(
                    OrderItem(
                        order=order,
                        product=product,
                        product_name=product.name,
                        sku_code=product.sku_code,
                        unit_price=product.price,
                        quantity=qty,
                        size=item.get("size", ""),
                        color=item.get("color", ""),
                    )
                )
            OrderItem.objects.bulk_create(order_items)

            OrderService.recalculate_totals(order)
            OrderService.record_status(order, Order.Status.PENDING, "Order created", save=False)

        logger.info(
            "Order %s created (%s items, total %s)", order.order_number, len(order_items), order.total,
            extra={"order_id": str(order.id)},
        )
        return order

    @staticmethod
    def recalculate_totals(order, save=True):
        """
        total = subtotal + tax + shipping_cost - discount.
        Called after every line-item mutation.
        """
        subtotal = sum((item.line_total for item in order.items.all()), Decimal("0.00"))
        order.subtotal = subtotal.quantize(CENT)
        order.tax, order.shipping_cost = calculate_charges(order.subtotal)
        order.total = order.compute_total()

        if save:
            order.save(update_fields=["subtotal", "tax", "shipping_cost", "total", "updated_at"])
        return order

    @staticmethod
    def _editable_order(order_id):
        order = Order.objects.select_for_update().get(id=order_id)
        if not order.is_payable:
            raise BusinessLogicException("Items can only be changed on unpaid pending orders.", code="order_locked")
        return order

    @staticmethod
    @transaction.atomic
    def add_item(order_id, product_id, quantity: int):
        order = OrderService._editable_order(order_id)
        product = Product.objects.select_for_update().get(id=product_id)

        if not product.is_active or product.stock_quantity < quantity:
            raise BusinessLogicException(f"Insufficient stock for {product.name}.", code="insufficient_stock")

        product.stock_quantity -= quantity
        product.save(update_fields=["stock_quantity", "updated_at"])

        item = order.items.filter(product=product).first()
        if item:
            item.quantity += quantity
            item.save(update_fields=["quantity"])
        else:
            OrderItem.objects.create(
                order=order,
                product=product,
                product_name=product.name,
                sku_code=product.sku_code,
                unit_price=product.price,
                quantity=quantity,
            )
        return OrderService.recalculate_totals(order)

    @staticmethod
    @transaction.atomic
    def remove_item(order_id, item_id):
        order = OrderService._editable_order(order_id)
        try:
            item = order.items.get(id=item_id)
        except OrderItem.DoesNotExist:
            raise BusinessLogicException("Item not found on this order.", code="item_not_found")

        if item.product_id:
            Product.objects.filter(id=item.product_id).update(
                stock_quantity=F("stock_quantity") + item.quantity
            )
        item.delete()
        return OrderService.recalculate_totals(order)

    @staticmethod
    def record_status(order, status: str, note: str = "", updated_by: str = "system", save=True):
        """
        The only way an order's status changes: set it and append one history row.
        """
        order.status = status
        if save:
            order.save(update_fields=["status", "updated_at"])
        return OrderStatusHistory.objects.create(
            order=order, status=status, note=note, updated_by=updated_by
        )

    @staticmethod
    @transaction.atomic
    def update_status(order_id, new_status: str, note: str = "", updated_by: str = "admin"):
        order = Order.objects.select_for_update().get(id=order_id)

        allowed = OrderService.FULFILLMENT_TRANSITIONS.get(order.status, set())
        if new_status not in allowed:
            raise BusinessLogicException(
                f"Cannot move order from {order.status} to {new_status}.", code="invalid_transition"
            )

        OrderService.record_status(order, new_status, note or f"Order {new_status}", updated_by)

        if new_status == Order.Status.DELIVERED and order.payment_method == Order.PaymentMethod.CASH_ON_DELIVERY:
            from apps.payments.services import PaymentService
            PaymentService.collect_cash_on_delivery(order, updated_by=updated_by)

        logger.info("Order %s moved to %s by %s", order.order_number, new_status, updated_by)
        return order

    @staticmethod
    def restore_stock(order):
        """
        Puts every line item's quantity back on its product. Caller owns the transaction.
        """
        for item in order.items.all():
            if item.product_id:
                Product.objects.filter(id=item.product_id).update(
                    stock_quantity=F("stock_quantity") + item.quantity
                )

    @staticmethod
    @transaction.atomic
    def cancel_order(order_id, reason: str = "Cancelled by customer", updated_by: str = "user", restock=True):
        """
        Handles Cancellation & Stock Release.
        A pending payment attempt is closed as failed so late gateway
        results cannot resurrect the order.
        """
        order = Order.objects.select_for_update().get(id=order_id)

        if order.status in OrderService.NON_CANCELLABLE:
            raise BusinessLogicException(
                f"Cannot cancel order that is {order.status}.", code="cannot_cancel"
            )
        if order.payment_status == Order.PaymentStatus.COMPLETED:
            raise BusinessLogicException(
                "Paid orders must be refunded instead of cancelled.", code="refund_required"
            )

        if restock:
            OrderService.restore_stock(order)

        if order.payment_status != Order.PaymentStatus.FAILED:
            from apps.payments.services import PaymentService
            PaymentService.close_pending_payment(order, reason=f"Order cancelled: {reason}")

        OrderService.record_status(order, Order.Status.CANCELLED, f"Order cancelled: {reason}", updated_by)
        logger.info("Order %s cancelled: %s", order.order_number, reason, extra={"order_id": str(order.id)})
        return order

    @staticmethod
    @transaction.atomic
    def clear_all_orders():
        """
        Admin bulk-clear. Items, history and payments go with their orders.
        """
        count = Order.objects.count()
        Order.objects.all().delete()
        logger.warning("Admin bulk-clear removed %s orders", count)
        return count
