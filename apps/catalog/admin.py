# apps/catalog/admin.py
from django.contrib import admin
from .models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku_code", "name", "price", "stock_quantity", "is_active")
    search_fields = ("sku_code", "name")
    list_filter = ("is_active",)
    list_editable = ("price", "stock_quantity", "is_active")
    readonly_fields = ("created_at", "updated_at")
