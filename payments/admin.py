from django.contrib import admin
from .models import Payment, PaymentEvent, PaymentTransaction, SweepRun


class PaymentTransactionInline(admin.TabularInline):
    model = PaymentTransaction
    extra = 0
    can_delete = False
    fields = ("created_at", "transaction_type", "channel", "status", "amount", "message")
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("payment_code", "order", "status", "amount", "currency", "expires_at", "paid_at", "created_at")
    search_fields = ("payment_code", "txn_ref", "gateway_transaction_no", "order__order_code")
    list_filter = ("status", "currency", "created_at")
    readonly_fields = (
        "payment_code", "order", "amount", "currency", "txn_ref", "payment_url", "client_ip",
        "status", "gateway_transaction_no", "gateway_response_code", "gateway_message", "bank_code",
        "expires_at", "paid_at", "refunded_amount", "refunded_at", "refund_requested_at", "created_at", "updated_at",
    )
    inlines = [PaymentTransactionInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    list_display = ("payment", "transaction_type", "channel", "status", "amount", "created_at")
    search_fields = ("payment__payment_code", "payment__txn_ref", "message")
    list_filter = ("transaction_type", "channel", "status")
    readonly_fields = ("payment", "transaction_type", "channel", "status", "amount", "message", "raw_response", "created_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PaymentEvent)
class PaymentEventAdmin(admin.ModelAdmin):
    list_display = ("kind", "user", "status", "attempts", "created_at", "sent_at")
    list_filter = ("kind", "status")
    readonly_fields = ("payload", "created_at", "sent_at", "last_error")


@admin.register(SweepRun)
class SweepRunAdmin(admin.ModelAdmin):
    list_display = ("started_at", "finished_at", "expired_count", "cancelled_orders", "ok")
    list_filter = ("ok",)
