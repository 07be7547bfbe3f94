from django.contrib import admin
from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    can_delete = False
    readonly_fields = ("book", "title", "isbn", "quantity", "unit_price", "line_total")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_code", "user", "status", "payment_status", "total", "currency", "created_at")
    search_fields = ("order_code", "user__username", "user__email")
    list_filter = ("status", "payment_status", "created_at")
    # status only moves through the order services
    readonly_fields = (
        "order_code", "user", "status", "payment_status", "sub_total", "shipping_fee", "discount",
        "tax", "total", "currency", "shipped_at", "delivered_at", "cancelled_at", "created_at", "updated_at",
    )
    inlines = [OrderItemInline]
