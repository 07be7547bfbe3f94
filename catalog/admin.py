from django.contrib import admin

from .models import Book, CartItem


@admin.register(Book)
class BookAdmin(admin.ModelAdmin):
    list_display = ("title", "isbn", "price", "stock_for_sale", "is_sellable", "updated_at")
    search_fields = ("title", "isbn")
    list_filter = ("is_sellable",)
    readonly_fields = ("created_at", "updated_at")


@admin.register(CartItem)
class CartItemAdmin(admin.ModelAdmin):
    list_display = ("user", "book", "quantity", "unit_price", "updated_at")
    search_fields = ("user__username", "book__title", "book__isbn")
    raw_id_fields = ("user", "book")
