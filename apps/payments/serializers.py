from rest_framework import serializers
from .models import Payment


class InitiatePaymentSerializer(serializers.Serializer):
    TYPE_CHOICES = ("momo", "momo_pay", "cash_on_delivery")

    type = serializers.ChoiceField(choices=TYPE_CHOICES)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=20)
    changeRequired = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=0)
    deliveryInstructions = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["type"] in ("momo", "momo_pay") and not attrs.get("phone"):
            raise serializers.ValidationError({"phone": "Phone number is required for mobile money payments."})
        return attrs


class RefundSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="Customer request")


class PaymentSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source="order.order_number", read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id", "order", "order_number", "reference_number", "transaction_id", "gateway_transaction_id",
            "amount", "currency", "payment_method", "status",
            "mobile_money", "momo_pay", "cash_on_delivery",
            "initiated_at", "completed_at", "failed_at", "refunded_at", "refund_reason",
            "status_history",
        ]
        read_only_fields = fields
