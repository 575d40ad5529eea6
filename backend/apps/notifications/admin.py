from django.contrib import admin

from .models import NotificationLog


@admin.register(NotificationLog)
class NotificationLogAdmin(admin.ModelAdmin):
    list_display = ('event_type', 'cycle_id', 'title', 'status',
                    'delivered_count', 'created_at')
    list_filter = ('status', 'event_type')
    search_fields = ('title', 'cycle_id')
    readonly_fields = ('event_type', 'cycle_id', 'user_ids', 'title', 'status',
                       'delivered_count', 'error', 'created_at')
