from django.contrib import admin

from .models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("part_number", "name", "price_cents", "stock", "sold_count", "is_active")
    list_filter = ("is_active",)
    search_fields = ("name", "part_number")

    def get_readonly_fields(self, request, obj=None):
        # Opening stock is set on creation; afterwards only the ledger moves it
        if obj is None:
            return ("sold_count", "created_at", "updated_at")
        return ("stock", "sold_count", "created_at", "updated_at")
