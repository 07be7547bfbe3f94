from django.conf import settings
from django.db import models


class Book(models.Model):
    title = models.CharField(max_length=255)
    isbn = models.CharField(max_length=20, unique=True)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    stock_for_sale = models.IntegerField(default=0)
    is_sellable = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("title",)
        constraints = [
            models.CheckConstraint(condition=models.Q(stock_for_sale__gte=0), name="book_stock_non_negative"),
        ]

    def __str__(self):
        return f"{self.title} ({self.isbn})"


class CartItem(models.Model):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="cart_items")
    book = models.ForeignKey(Book, on_delete=models.CASCADE, related_name="cart_items")
    quantity = models.PositiveIntegerField(default=1)
    # price seen by the user when the line was added; compared at checkout
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("created_at", "id")
        constraints = [
            models.UniqueConstraint(fields=["user", "book"], name="cart_item_user_book_unique"),
            models.CheckConstraint(condition=models.Q(quantity__gte=1), name="cart_item_quantity_positive"),
        ]

    @property
    def is_stale(self) -> bool:
        return self.unit_price != self.book.price

    @property
    def line_total(self):
        return self.unit_price * self.quantity

    def __str__(self):
        return f"{self.user_id}: {self.quantity} x {self.book_id}"
