from django.urls import path
from .views import (
    InitiatePaymentView,
    PaymentCallbackView,
    VerifyPaymentView,
    OrderPaymentStatusView,
    PaymentListView,
    RefundPaymentView,
)

urlpatterns = [
    path('', PaymentListView.as_view(), name='payment-list'),
    path('orders/<uuid:order_id>/pay/', InitiatePaymentView.as_view(), name='payment-initiate'),
    path('orders/<uuid:order_id>/status/', OrderPaymentStatusView.as_view(), name='payment-order-status'),
    path('callback/<str:transaction_id>/', PaymentCallbackView.as_view(), name='payment-callback'),
    path('verify/<str:transaction_id>/', VerifyPaymentView.as_view(), name='payment-verify'),
    path('<uuid:payment_id>/refund/', RefundPaymentView.as_view(), name='payment-refund'),
]
