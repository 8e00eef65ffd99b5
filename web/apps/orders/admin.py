from django.contrib import admin

from .models import OrderItemModel, OrderModel, OrderStatusEntry, PaymentAttempt


class OrderItemInline(admin.TabularInline):
    model = OrderItemModel
    extra = 0
    can_delete = False
    readonly_fields = ("product", "name", "part_number", "quantity", "unit_price_cents")

    def has_add_permission(self, request, obj=None):
        return False


class PaymentAttemptInline(admin.TabularInline):
    model = PaymentAttempt
    extra = 0
    can_delete = False
    readonly_fields = ("checkout_request_id", "merchant_request_id", "phone", "created_at")

    def has_add_permission(self, request, obj=None):
        return False


class OrderStatusInline(admin.TabularInline):
    model = OrderStatusEntry
    extra = 0
    can_delete = False
    readonly_fields = ("status", "note", "actor", "timestamp")

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(OrderModel)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "user", "status", "payment_status", "is_paid", "total_cents", "created_at")
    list_filter = ("status", "payment_status", "payment_method", "is_paid")
    search_fields = (
        "order_number",
        "mpesa_receipt",
        "checkout_request_id",
        "payment_attempts__checkout_request_id",
        "user__email",
    )
    date_hierarchy = "created_at"
    inlines = [OrderItemInline, PaymentAttemptInline, OrderStatusInline]
    # Status and payment changes go through the API so stock and history stay consistent
    readonly_fields = (
        "order_number",
        "user",
        "status",
        "payment_status",
        "is_paid",
        "paid_at",
        "subtotal_cents",
        "shipping_cents",
        "tax_cents",
        "total_cents",
        "currency",
        "merchant_request_id",
        "checkout_request_id",
        "mpesa_receipt",
        "transaction_date",
        "payer_phone",
        "estimated_delivery",
        "delivered_at",
        "cancel_reason",
        "created_at",
        "updated_at",
    )

    def has_delete_permission(self, request, obj=None):
        return False
