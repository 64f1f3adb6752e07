import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("orders", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="CallbackLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("transaction_id", models.CharField(db_index=True, max_length=50)),
                ("source", models.CharField(
                    choices=[("callback", "Callback"), ("verify", "Manual verification"), ("expiry", "Expiry sweep")],
                    default="callback", max_length=20,
                )),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("outcome", models.CharField(
                    choices=[
                        ("applied", "Applied"), ("duplicate", "Duplicate"),
                        ("not_found", "Order not found"), ("ignored", "Ignored"),
                    ],
                    max_length=20,
                )),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="RWF", max_length=3)),
                ("payment_method", models.CharField(
                    choices=[
                        ("mobile_money", "Mobile Money"), ("momo_pay", "MOMO Pay"),
                        ("cash_on_delivery", "Cash on Delivery"), ("card", "Card"),
                    ],
                    max_length=20,
                )),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"), ("completed", "Completed"),
                        ("failed", "Failed"), ("refunded", "Refunded"),
                    ],
                    db_index=True, default="pending", max_length=20,
                )),
                ("transaction_id", models.CharField(blank=True, max_length=50, null=True, unique=True)),
                ("gateway_transaction_id", models.CharField(blank=True, max_length=100)),
                ("reference_number", models.CharField(editable=False, max_length=30, unique=True)),
                ("mobile_money", models.JSONField(blank=True, default=dict)),
                ("momo_pay", models.JSONField(blank=True, default=dict)),
                ("cash_on_delivery", models.JSONField(blank=True, default=dict)),
                ("gateway_response", models.JSONField(blank=True, default=dict)),
                ("refund_reason", models.TextField(blank=True)),
                ("initiated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("status_history", models.JSONField(blank=True, default=list)),
                ("order", models.OneToOneField(
                    on_delete=django.db.models.deletion.CASCADE, related_name="payment", to="orders.order",
                )),
                ("user", models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    related_name="payments", to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "payment_method", "initiated_at"], name="payments_status_method_idx"),
                ],
            },
        ),
    ]
