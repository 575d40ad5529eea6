# apps/cycles/admin.py

from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import BuyingGroup, CycleEvent, OrderCycle, Participant, ParticipantItem


@admin.register(BuyingGroup)
class BuyingGroupAdmin(admin.ModelAdmin):
    list_display = (
        'name',
        'is_active',
        'collecting_hours',
        'payment_window_hours',
        'allow_mid_cycle_joins',
        'currency',
        'created_at'
    )
    list_filter = ('is_active', 'allow_mid_cycle_joins', 'currency')
    search_fields = ('name', 'description')


class ParticipantInline(admin.TabularInline):
    model = Participant
    extra = 0
    fields = ('user', 'user_name', 'total_amount', 'payment_status',
              'order_status', 'cancellation_reason', 'joined_at')
    readonly_fields = fields
    can_delete = False
    show_change_link = True


@admin.register(OrderCycle)
class OrderCycleAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'group',
        'phase_display',
        'total_participants',
        'total_amount',
        'min_quantity_met',
        'collecting_ends_at',
        'payment_window_ends_at',
        'created_at'
    )
    list_filter = ('phase', 'min_quantity_met', 'is_archived', 'group')
    search_fields = ('group__name',)
    # Phase changes go through the state machine, never the admin form
    readonly_fields = (
        'phase',
        'product_aggregates',
        'total_amount',
        'total_participants',
        'min_quantity_met',
        'open_product_ids',
        'version',
        'cancellation_reason',
        'is_archived',
        'payment_window_opened_at',
        'confirmed_at',
        'processing_at',
        'completed_at',
        'cancelled_at',
        'created_at',
        'updated_at'
    )
    inlines = [ParticipantInline]

    fieldsets = (
        ('Cycle', {
            'fields': ('group', 'phase', 'allow_mid_cycle_joins', 'currency')
        }),
        ('Deadlines', {
            'fields': ('collecting_ends_at', 'payment_window_ends_at')
        }),
        ('Totals', {
            'fields': (
                'product_aggregates',
                'total_amount',
                'total_participants',
                'min_quantity_met',
                'open_product_ids'
            )
        }),
        ('History', {
            'fields': (
                'version',
                'cancellation_reason',
                'is_archived',
                'payment_window_opened_at',
                'confirmed_at',
                'processing_at',
                'completed_at',
                'cancelled_at',
                'created_at',
                'updated_at'
            )
        })
    )

    def phase_display(self, obj):
        colors = {
            'collecting': 'orange',
            'payment_window': 'blue',
            'confirmed': 'purple',
            'processing': 'lightblue',
            'completed': 'green',
            'cancelled': 'red'
        }
        color = colors.get(obj.phase, 'black')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 3px;">{}</span>',
            color,
            obj.get_phase_display()
        )
    phase_display.short_description = 'Phase'


class ParticipantItemInline(admin.TabularInline):
    model = ParticipantItem
    extra = 0
    fields = ('product_id', 'name', 'quantity', 'unit_price',
              'retail_unit_price', 'min_quantity')


@admin.register(Participant)
class ParticipantAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'cycle_link',
        'user',
        'total_amount',
        'payment_status',
        'order_status',
        'joined_at'
    )
    list_filter = ('payment_status', 'order_status', 'cancellation_reason')
    search_fields = ('user__email', 'user_name')
    readonly_fields = ('joined_at', 'paid_at', 'reminder_sent_at', 'updated_at')
    inlines = [ParticipantItemInline]

    def cycle_link(self, obj):
        url = reverse('admin:cycles_ordercycle_change', args=[obj.cycle_id])
        return format_html('<a href="{}">#{}</a>', url, obj.cycle_id)
    cycle_link.short_description = 'Cycle'


@admin.register(CycleEvent)
class CycleEventAdmin(admin.ModelAdmin):
    list_display = ('cycle', 'event_type', 'created_at')
    list_filter = ('event_type',)
    readonly_fields = ('cycle', 'event_type', 'event_data', 'created_at')
