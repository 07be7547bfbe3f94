from django.conf import settings
from django.db import models
from django.utils import timezone

from orders.exceptions import InvalidTransition


class PaymentStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    COMPLETED = "COMPLETED", "Completed"
    FAILED = "FAILED", "Failed"
    EXPIRED = "EXPIRED", "Expired"
    REFUNDED = "REFUNDED", "Refunded"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.EXPIRED: set(),
    PaymentStatus.REFUNDED: set(),
}


class Payment(models.Model):
    payment_code = models.CharField(max_length=32, unique=True)
    order = models.ForeignKey("orders.Order", on_delete=models.PROTECT, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="VND")

    # our reference sent to the gateway; every callback is keyed on it
    txn_ref = models.CharField(max_length=64, unique=True)
    order_info = models.CharField(max_length=255, blank=True, default="")
    payment_url = models.TextField(blank=True, default="")
    client_ip = models.CharField(max_length=45, blank=True, default="")

    status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )
    gateway_transaction_no = models.CharField(max_length=64, blank=True, default="")
    gateway_response_code = models.CharField(max_length=8, blank=True, default="")
    gateway_message = models.CharField(max_length=255, blank=True, default="")
    bank_code = models.CharField(max_length=32, blank=True, default="")

    expires_at = models.DateTimeField(db_index=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    refunded_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    refunded_at = models.DateTimeField(null=True, blank=True)
    # set when a refund is sent to the gateway; at most one refund call per payment
    refund_requested_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at", "-id")
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=models.Q(status="PENDING"),
                name="payment_one_pending_per_order",
            ),
        ]

    def __str__(self):
        return f"{self.payment_code} ({self.status})"

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) > self.expires_at

    def transition_to(self, new_status) -> None:
        if new_status not in PAYMENT_TRANSITIONS.get(self.status, set()):
            raise InvalidTransition("Payment", self.status, new_status)
        self.status = new_status


class PaymentTransaction(models.Model):
    """Append-only audit trail of every gateway interaction."""

    class Type(models.TextChoices):
        PAYMENT = "PAYMENT", "Payment"
        REFUND = "REFUND", "Refund"
        WEBHOOK = "WEBHOOK", "Webhook"
        STATUS_CHECK = "STATUS_CHECK", "Status check"
        TIMEOUT = "TIMEOUT", "Timeout"

    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="transactions")
    transaction_type = models.CharField(max_length=16, choices=Type.choices)
    channel = models.CharField(max_length=16, blank=True, default="")
    status = models.CharField(max_length=16, choices=PaymentStatus.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    message = models.CharField(max_length=255, blank=True, default="")
    raw_response = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("created_at", "id")

    def __str__(self):
        return f"{self.payment_id} {self.transaction_type} {self.status}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("PaymentTransaction rows are write-once")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("PaymentTransaction rows cannot be deleted")


class PaymentEvent(models.Model):
    """Outbox row for the notification collaborator.

    Written in the same transaction as the payment change that caused it and
    delivered afterwards, so a mail outage never rolls a payment back.
    """

    class Kind(models.TextChoices):
        SUCCEEDED = "payment.succeeded", "Payment succeeded"
        FAILED = "payment.failed", "Payment failed"
        EXPIRED = "payment.expired", "Payment expired"
        REFUNDED = "payment.refunded", "Payment refunded"

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        SENT = "SENT", "Sent"
        FAILED = "FAILED", "Failed"

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="payment_events")
    kind = models.CharField(max_length=32, choices=Kind.choices)
    payload = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=8, choices=Status.choices, default=Status.PENDING, db_index=True)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("created_at", "id")

    def __str__(self):
        return f"{self.kind} -> {self.user_id} ({self.status})"


class SweepRun(models.Model):
    started_at = models.DateTimeField()
    finished_at = models.DateTimeField(null=True, blank=True)
    expired_count = models.PositiveIntegerField(default=0)
    cancelled_orders = models.PositiveIntegerField(default=0)
    ok = models.BooleanField(default=False)
    error = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ("-started_at", "-id")

    def __str__(self):
        return f"sweep {self.started_at:%Y-%m-%d %H:%M:%S} expired={self.expired_count} ok={self.ok}"
