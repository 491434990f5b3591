from django.contrib import admin

from deliveries.models import Company, Delivery, Driver


@admin.register(Company)
class CompanyAdmin(admin.ModelAdmin):
    list_display = ["name", "owner", "total_deliveries", "total_earnings_cents"]
    search_fields = ["name", "stripe_account_id"]
    readonly_fields = [
        "total_earnings_cents",
        "total_deliveries",
        "last_payment_received_at",
    ]


@admin.register(Driver)
class DriverAdmin(admin.ModelAdmin):
    list_display = ["id", "user", "company", "total_deliveries"]
    readonly_fields = ["total_deliveries", "total_earnings_cents", "last_delivery_at"]


@admin.register(Delivery)
class DeliveryAdmin(admin.ModelAdmin):
    list_display = ["id", "customer", "company", "status", "payment_status", "price_cents"]
    list_filter = ["status", "payment_status"]
    readonly_fields = ["payment_status"]
