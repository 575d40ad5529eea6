from django.contrib import admin

from .models import PaymentRecord, RefundRecord, SignatureFailure, WebhookEvent


class RefundRecordInline(admin.TabularInline):
    model = RefundRecord
    extra = 0
    can_delete = False
    readonly_fields = ('gateway_refund_id', 'amount_minor_units', 'status',
                       'reason', 'processed_by', 'created_at')


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = (
        'gateway_order_id',
        'user',
        'cycle',
        'amount_major_units',
        'currency',
        'status',
        'created_at',
        'paid_at'
    )
    list_filter = ('status', 'currency', 'created_at')
    search_fields = ('gateway_order_id', 'payment_id', 'receipt', 'user__email')
    # Payment state is owned by the reconciler
    readonly_fields = (
        'gateway_order_id', 'payment_id', 'signature', 'status', 'user',
        'cycle', 'participant', 'amount_minor_units', 'currency', 'receipt',
        'failure_reason', 'created_at', 'updated_at', 'paid_at'
    )
    inlines = [RefundRecordInline]


@admin.register(SignatureFailure)
class SignatureFailureAdmin(admin.ModelAdmin):
    list_display = ('source', 'gateway_order_id', 'payment_id', 'user',
                    'remote_addr', 'created_at')
    list_filter = ('source', 'created_at')
    readonly_fields = ('source', 'gateway_order_id', 'payment_id',
                       'submitted_signature', 'user', 'remote_addr', 'created_at')


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ('event_key', 'event_type', 'status', 'processed_at')
    list_filter = ('event_type', 'status')
    search_fields = ('event_key',)
    readonly_fields = ('event_key', 'event_type', 'status', 'payload', 'processed_at')
