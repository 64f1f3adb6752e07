# apps/notifications/admin.py
from django.contrib import admin

from .models import NotificationTemplate, Notification


@admin.register(NotificationTemplate)
class NotificationTemplateAdmin(admin.ModelAdmin):
    list_display = ("key", "channel", "is_active", "updated_at")
    search_fields = ("key", "body_template")
    list_filter = ("channel", "is_active")


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = (
        "phone",
        "event_key",
        "channel",
        "status",
        "attempts",
        "created_at",
        "sent_at",
    )
    list_filter = ("channel", "status", "event_key")
    search_fields = ("phone", "body", "provider_message_id")
    readonly_fields = (
        "user",
        "phone",
        "event_key",
        "template",
        "channel",
        "body",
        "data",
        "status",
        "attempts",
        "provider_message_id",
        "error_message",
        "sent_at",
        "created_at",
        "updated_at",
    )

    def has_add_permission(self, request):
        return False
