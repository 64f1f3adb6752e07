import json
from django.contrib import admin
from django.utils.html import format_html
from .models import Order, OrderItem, OrderStatusHistory


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ('product', 'product_name', 'sku_code', 'unit_price', 'quantity')

    def has_add_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ('created_at', 'status', 'note', 'updated_by')

    def has_add_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = (
        'order_number',
        'user',
        'status',
        'payment_status',
        'payment_method',
        'total',
        'created_at'
    )
    list_filter = ('status', 'payment_status', 'payment_method', 'created_at')
    search_fields = ('order_number', 'external_id', 'reference_number', 'customer_phone', 'user__username')

    inlines = [OrderItemInline, OrderStatusHistoryInline]

    # Status fields are written by the services only
    readonly_fields = (
        'id',
        'order_number',
        'reference_number',
        'external_id',
        'user',
        'customer_phone',
        'subtotal',
        'tax',
        'shipping_cost',
        'discount',
        'total',
        'status',
        'payment_status',
        'payment_method',
        'formatted_shipping_address',
        'formatted_mobile_money',
        'created_at',
        'updated_at',
    )

    fieldsets = (
        ('Order Details', {
            'fields': ('order_number', 'id', 'reference_number', 'status', 'user', 'customer_phone')
        }),
        ('Financials', {
            'fields': ('subtotal', 'tax', 'shipping_cost', 'discount', 'total')
        }),
        ('Payment', {
            'fields': ('payment_method', 'payment_status', 'external_id', 'formatted_mobile_money')
        }),
        ('System Data', {
            'fields': ('formatted_shipping_address', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def has_add_permission(self, request):
        return False

    def formatted_shipping_address(self, obj):
        if not obj.shipping_address:
            return "-"
        content = json.dumps(obj.shipping_address, indent=2)
        return format_html("<pre>{}</pre>", content)

    formatted_shipping_address.short_description = "Shipping Address Snapshot"

    def formatted_mobile_money(self, obj):
        if not obj.mobile_money:
            return "-"
        content = json.dumps(obj.mobile_money, indent=2)
        return format_html("<pre>{}</pre>", content)

    formatted_mobile_money.short_description = "Mobile Money"
