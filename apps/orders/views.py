from django.shortcuts import get_object_or_404
from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated, IsAdminUser
from rest_framework.response import Response

from .models import Order
from .serializers import (
    OrderSerializer,
    CreateOrderSerializer,
    CancelOrderSerializer,
    UpdateStatusSerializer,
)
from .services import OrderService


class OrderViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = Order.objects.prefetch_related('items', 'status_history')
        if self.request.user.is_staff:
            return qs
        return qs.filter(user=self.request.user)

    def create(self, request):
        """
        Checkout Endpoint.
        Expects: { "items": [{"product_id": "...", "quantity": 2}], "shipping_address": {...},
                   "payment_method": "mobile_money", "customer_phone": "0788123456" }
        """
        serializer = CreateOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = OrderService.create_order(
            user=request.user,
            items=data['items'],
            shipping_address=data['shipping_address'],
            payment_method=data['payment_method'],
            customer_phone=data['customer_phone'],
            notes=data['notes'],
        )
        order = self.get_queryset().get(id=order.id)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        order = self.get_object()
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        updated_by = 'admin' if request.user.is_staff else 'user'
        OrderService.cancel_order(order.id, reason=serializer.validated_data['reason'], updated_by=updated_by)
        return Response(OrderSerializer(self.get_queryset().get(id=order.id)).data)

    @action(detail=True, methods=['post'], url_path='status', permission_classes=[IsAdminUser])
    def update_status(self, request, pk=None):
        order = get_object_or_404(Order, pk=pk)
        serializer = UpdateStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        OrderService.update_status(
            order.id,
            serializer.validated_data['status'],
            note=serializer.validated_data['note'],
            updated_by=request.user.get_username() or 'admin',
        )
        return Response(OrderSerializer(self.get_queryset().get(id=order.id)).data)

    @action(detail=False, methods=['post'], permission_classes=[IsAdminUser])
    def clear(self, request):
        deleted = OrderService.clear_all_orders()
        return Response({"success": True, "deleted": deleted})
