import uuid
from decimal import Decimal

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("catalog", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order_number", models.CharField(editable=False, max_length=20, unique=True)),
                ("reference_number", models.CharField(blank=True, max_length=50, null=True, unique=True)),
                ("external_id", models.CharField(blank=True, max_length=50, null=True, unique=True)),
                ("customer_phone", models.CharField(blank=True, max_length=20)),
                ("shipping_address", models.JSONField(blank=True, default=dict)),
                ("subtotal", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("tax", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("shipping_cost", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("currency", models.CharField(default="RWF", max_length=3)),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"), ("confirmed", "Confirmed"), ("processing", "Processing"),
                        ("shipped", "Shipped"), ("delivered", "Delivered"), ("cancelled", "Cancelled"),
                        ("returned", "Returned"),
                    ],
                    db_index=True, default="pending", max_length=20,
                )),
                ("payment_status", models.CharField(
                    choices=[
                        ("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"),
                        ("failed", "Failed"), ("refunded", "Refunded"),
                    ],
                    db_index=True, default="pending", max_length=20,
                )),
                ("payment_method", models.CharField(
                    choices=[
                        ("mobile_money", "Mobile Money"), ("momo_pay", "MOMO Pay"),
                        ("cash_on_delivery", "Cash on Delivery"), ("card", "Card"),
                    ],
                    default="mobile_money", max_length=20,
                )),
                ("mobile_money", models.JSONField(blank=True, default=dict)),
                ("notes", models.JSONField(blank=True, default=dict)),
                ("user", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    related_name="orders", to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "payment_status"], name="orders_status_payment_idx"),
                    models.Index(fields=["created_at"], name="orders_created_at_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("product_name", models.CharField(max_length=255)),
                ("sku_code", models.CharField(blank=True, max_length=100)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("quantity", models.PositiveIntegerField()),
                ("size", models.CharField(blank=True, max_length=20)),
                ("color", models.CharField(blank=True, max_length=30)),
                ("order", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="items", to="orders.order",
                )),
                ("product", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    related_name="order_items", to="catalog.product",
                )),
            ],
        ),
        migrations.CreateModel(
            name="OrderStatusHistory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(max_length=20)),
                ("note", models.TextField(blank=True)),
                ("updated_by", models.CharField(default="system", max_length=50)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("order", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="status_history", to="orders.order",
                )),
            ],
            options={
                "ordering": ["created_at", "id"],
                "verbose_name_plural": "Order status history",
            },
        ),
    ]
