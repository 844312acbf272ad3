from django.contrib import admin

from events.models import Event, Registration


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ["name", "code", "payment_provider", "currency", "created_at"]
    search_fields = ["name", "code"]


@admin.register(Registration)
class RegistrationAdmin(admin.ModelAdmin):
    list_display = [
        "registration_id",
        "email",
        "event",
        "payment_status",
        "amount_cents",
    ]
    list_filter = ["payment_status", "event"]
    search_fields = ["registration_id", "email", "first_name", "last_name"]
