from django.conf import settings
from django.db import models
from django.utils import timezone

from .exceptions import InvalidTransition


class OrderStatus(models.TextChoices):
    PENDING_PAYMENT = "PENDING_PAYMENT", "Pending payment"
    PAID = "PAID", "Paid"
    PROCESSING = "PROCESSING", "Processing"
    SHIPPED = "SHIPPED", "Shipped"
    DELIVERED = "DELIVERED", "Delivered"
    CANCELLED = "CANCELLED", "Cancelled"
    REFUNDED = "REFUNDED", "Refunded"


class OrderPaymentStatus(models.TextChoices):
    UNPAID = "UNPAID", "Unpaid"
    PAID = "PAID", "Paid"
    FAILED = "FAILED", "Failed"
    REFUNDED = "REFUNDED", "Refunded"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED", "Partially refunded"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

PAYMENT_STATUS_TRANSITIONS = {
    OrderPaymentStatus.UNPAID: {OrderPaymentStatus.PAID, OrderPaymentStatus.FAILED},
    OrderPaymentStatus.FAILED: {OrderPaymentStatus.PAID},
    OrderPaymentStatus.PAID: {OrderPaymentStatus.REFUNDED, OrderPaymentStatus.PARTIALLY_REFUNDED},
    OrderPaymentStatus.PARTIALLY_REFUNDED: set(),
    OrderPaymentStatus.REFUNDED: set(),
}

TERMINAL_ORDER_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
SETTLED_PAYMENT_STATUSES = {
    OrderPaymentStatus.PAID,
    OrderPaymentStatus.REFUNDED,
    OrderPaymentStatus.PARTIALLY_REFUNDED,
}


class Order(models.Model):
    order_code = models.CharField(max_length=32, unique=True, db_index=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")

    sub_total = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_fee = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="VND")

    status = models.CharField(
        max_length=20, choices=OrderStatus.choices, default=OrderStatus.PENDING_PAYMENT, db_index=True
    )
    payment_status = models.CharField(
        max_length=20, choices=OrderPaymentStatus.choices, default=OrderPaymentStatus.UNPAID, db_index=True
    )

    shipping_address_line1 = models.CharField(max_length=255)
    shipping_address_line2 = models.CharField(max_length=255, blank=True, default="")
    shipping_city = models.CharField(max_length=128)
    shipping_postal_code = models.CharField(max_length=20, blank=True, default="")
    shipping_country = models.CharField(max_length=2, default="VN")
    customer_note = models.TextField(blank=True, default="")

    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at", "-id")
        constraints = [
            models.CheckConstraint(condition=models.Q(total__gte=0), name="order_total_non_negative"),
        ]

    def __str__(self):
        return f"{self.order_code} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    @property
    def shipping_address(self) -> str:
        parts = [self.shipping_address_line1, self.shipping_address_line2, self.shipping_city]
        address = ", ".join(p for p in parts if p)
        if self.shipping_postal_code:
            address = f"{address} {self.shipping_postal_code}"
        return address

    def can_transition_to(self, new_status) -> bool:
        if new_status not in ORDER_TRANSITIONS.get(self.status, set()):
            return False
        if new_status == OrderStatus.CANCELLED:
            # once money has moved, only the refund workflow can unwind it
            return self.payment_status not in SETTLED_PAYMENT_STATUSES
        return True

    def transition_to(self, new_status, save: bool = True) -> None:
        """Move the order along the state machine or raise InvalidTransition."""
        if not self.can_transition_to(new_status):
            reason = None
            if new_status == OrderStatus.CANCELLED and self.payment_status in SETTLED_PAYMENT_STATUSES:
                reason = "order has been paid, use a refund instead"
            raise InvalidTransition("Order", self.status, new_status, reason)

        now = timezone.now()
        self.status = new_status
        fields = ["status", "updated_at"]
        if new_status == OrderStatus.SHIPPED:
            self.shipped_at = now
            fields.append("shipped_at")
        elif new_status == OrderStatus.DELIVERED:
            self.delivered_at = now
            fields.append("delivered_at")
        elif new_status == OrderStatus.CANCELLED:
            self.cancelled_at = now
            fields.append("cancelled_at")
        if save:
            self.save(update_fields=fields)

    def set_payment_status(self, new_status, save: bool = True) -> None:
        if new_status == self.payment_status:
            return
        if new_status not in PAYMENT_STATUS_TRANSITIONS.get(self.payment_status, set()):
            raise InvalidTransition("Order payment status", self.payment_status, new_status)
        self.payment_status = new_status
        if save:
            self.save(update_fields=["payment_status", "updated_at"])


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    book = models.ForeignKey("catalog.Book", on_delete=models.PROTECT, related_name="order_items")
    # snapshot taken at checkout; independent of later catalog edits
    title = models.CharField(max_length=255)
    isbn = models.CharField(max_length=20)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ("id",)
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gte=1), name="order_item_quantity_positive"),
        ]

    def __str__(self):
        return f"{self.order_id}: {self.quantity} x {self.title}"
