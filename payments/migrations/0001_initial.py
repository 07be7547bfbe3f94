from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


PAYMENT_STATUS_CHOICES = [
    ("PENDING", "Pending"),
    ("COMPLETED", "Completed"),
    ("FAILED", "Failed"),
    ("EXPIRED", "Expired"),
    ("REFUNDED", "Refunded"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("orders", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("payment_code", models.CharField(max_length=32, unique=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="VND", max_length=8)),
                ("txn_ref", models.CharField(max_length=64, unique=True)),
                ("order_info", models.CharField(blank=True, default="", max_length=255)),
                ("payment_url", models.TextField(blank=True, default="")),
                ("client_ip", models.CharField(blank=True, default="", max_length=45)),
                ("status", models.CharField(choices=PAYMENT_STATUS_CHOICES, db_index=True, default="PENDING", max_length=16)),
                ("gateway_transaction_no", models.CharField(blank=True, default="", max_length=64)),
                ("gateway_response_code", models.CharField(blank=True, default="", max_length=8)),
                ("gateway_message", models.CharField(blank=True, default="", max_length=255)),
                ("bank_code", models.CharField(blank=True, default="", max_length=32)),
                ("expires_at", models.DateTimeField(db_index=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="orders.order")),
            ],
            options={
                "ordering": ("-created_at", "-id"),
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "PENDING")), fields=("order",), name="payment_one_pending_per_order"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("payment.succeeded", "Payment succeeded"), ("payment.failed", "Payment failed"), ("payment.expired", "Payment expired"), ("payment.refunded", "Payment refunded")], max_length=32)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("SENT", "Sent"), ("FAILED", "Failed")], db_index=True, default="PENDING", max_length=8)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payment_events", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ("created_at", "id"),
            },
        ),
        migrations.CreateModel(
            name="SweepRun",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("started_at", models.DateTimeField()),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("expired_count", models.PositiveIntegerField(default=0)),
                ("cancelled_orders", models.PositiveIntegerField(default=0)),
                ("ok", models.BooleanField(default=False)),
                ("error", models.CharField(blank=True, default="", max_length=255)),
            ],
            options={
                "ordering": ("-started_at", "-id"),
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("transaction_type", models.CharField(choices=[("PAYMENT", "Payment"), ("REFUND", "Refund"), ("WEBHOOK", "Webhook"), ("STATUS_CHECK", "Status check"), ("TIMEOUT", "Timeout")], max_length=16)),
                ("channel", models.CharField(blank=True, default="", max_length=16)),
                ("status", models.CharField(choices=PAYMENT_STATUS_CHOICES, max_length=16)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("message", models.CharField(blank=True, default="", max_length=255)),
                ("raw_response", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("payment", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="payments.payment")),
            ],
            options={
                "ordering": ("created_at", "id"),
            },
        ),
    ]
