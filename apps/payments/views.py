import logging

from django.shortcuts import get_object_or_404
from rest_framework import generics, status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated, AllowAny

from apps.orders.models import Order
from .exceptions import PaymentProcessingFailed
from .models import Payment, PaymentMethod
from .reconciliation import handle_callback, verify_payment
from .serializers import InitiatePaymentSerializer, PaymentSerializer, RefundSerializer
from .services import PaymentService

logger = logging.getLogger(__name__)


def _order_for(request, order_id):
    qs = Order.objects.all()
    if not request.user.is_staff:
        qs = qs.filter(user=request.user)
    return get_object_or_404(qs, id=order_id)


class InitiatePaymentView(APIView):
    """
    Starts payment for an existing order.
    Body: {"type": "momo" | "momo_pay" | "cash_on_delivery", "phone": "0788123456"}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        order = _order_for(request, order_id)
        serializer = InitiatePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        if data["type"] == "cash_on_delivery":
            payment = PaymentService.process_cash_on_delivery(
                order,
                change_required=data["changeRequired"],
                delivery_instructions=data["deliveryInstructions"],
                user=request.user,
            )
            return Response({
                "success": True,
                "message": "Cash on delivery - payment on arrival",
                "payment": PaymentSerializer(payment).data,
            })

        # Reject double clicks while the first request is in flight
        if not PaymentService.acquire_initiation_lock(order.id):
            return Response(
                {"success": False, "message": "A payment request for this order is already in progress"},
                status=status.HTTP_409_CONFLICT,
            )

        method = PaymentMethod.MOMO_PAY if data["type"] == "momo_pay" else PaymentMethod.MOBILE_MONEY
        try:
            result = PaymentService.initiate_mobile_money(order, data["phone"], user=request.user, method=method)
        except PaymentProcessingFailed as e:
            return Response(
                {"success": False, "message": "Mobile Money payment initiation failed", "error": e.message},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        finally:
            PaymentService.release_initiation_lock(order.id)

        return Response({"success": True, **result})


class PaymentCallbackView(APIView):
    """
    Public endpoint the gateway posts results to.
    The transaction id is unguessable and results only apply to pending orders.
    """
    permission_classes = [AllowAny]
    authentication_classes = []
    # Gateway retries must never see a 429; replays are idempotent
    throttle_classes = []

    def post(self, request, transaction_id):
        http_status, envelope = handle_callback(transaction_id, request.data)
        return Response(envelope, status=http_status)


class VerifyPaymentView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, transaction_id):
        qs = Order.objects.all()
        if not request.user.is_staff:
            qs = qs.filter(user=request.user)
        get_object_or_404(qs, external_id=transaction_id)

        result = verify_payment(transaction_id)
        return Response({"success": True, **result})


class OrderPaymentStatusView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id):
        order = _order_for(request, order_id)
        payment = Payment.objects.filter(order=order).first()
        return Response({
            "success": True,
            "orderId": str(order.id),
            "orderNumber": order.order_number,
            "status": order.status,
            "paymentStatus": order.payment_status,
            "paymentMethod": order.payment_method,
            "mobileMoney": order.mobile_money,
            "payment": PaymentSerializer(payment).data if payment else None,
        })


class PaymentListView(generics.ListAPIView):
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated]
    filterset_fields = ["status", "payment_method"]

    def get_queryset(self):
        return PaymentService.user_payments(self.request.user)


class RefundPaymentView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, payment_id):
        qs = Payment.objects.all()
        if not request.user.is_staff:
            qs = qs.filter(user=request.user)
        payment = get_object_or_404(qs, id=payment_id)

        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        updated_by = "admin" if request.user.is_staff else "user"
        result = PaymentService.refund(payment.id, serializer.validated_data["reason"], requested_by=updated_by)

        body = {"success": result["success"], "message": result["message"]}
        if result["success"]:
            body["payment"] = PaymentSerializer(result["payment"]).data
            return Response(body)
        return Response(body, status=status.HTTP_400_BAD_REQUEST)
