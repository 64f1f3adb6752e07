from django.contrib import admin
from .models import Payment, CallbackLog


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('reference_number', 'order', 'amount', 'status', 'payment_method', 'transaction_id', 'created_at')
    list_filter = ('status', 'payment_method', 'created_at')
    search_fields = ('reference_number', 'transaction_id', 'gateway_transaction_id', 'order__order_number')
    readonly_fields = (
        'order', 'user', 'amount', 'currency', 'payment_method', 'status', 'transaction_id',
        'gateway_transaction_id', 'reference_number', 'mobile_money', 'momo_pay', 'cash_on_delivery',
        'gateway_response', 'refund_reason', 'initiated_at', 'completed_at', 'failed_at', 'refunded_at',
        'status_history',
    )

    def has_add_permission(self, request):
        return False


@admin.register(CallbackLog)
class CallbackLogAdmin(admin.ModelAdmin):
    list_display = ('transaction_id', 'source', 'outcome', 'created_at')
    list_filter = ('source', 'outcome', 'created_at')
    search_fields = ('transaction_id',)
    readonly_fields = ('transaction_id', 'source', 'outcome', 'payload', 'created_at')
