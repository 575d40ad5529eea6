# apps/payments/models.py

from decimal import Decimal
from django.conf import settings
from django.db import models
from django.utils.translation import gettext_lazy as _


class PaymentRecord(models.Model):
    """
    One gateway order for a participant's payment.
    Created by create_intent and mutated only by the payment reconciler.
    """
    STATUS_CREATED = 'created'
    STATUS_PAID = 'paid'
    STATUS_FAILED = 'failed'
    STATUS_REFUNDED = 'refunded'
    STATUS_NEEDS_RECONCILIATION = 'needs_reconciliation'
    STATUS_CHOICES = [
        (STATUS_CREATED, 'Created'),
        (STATUS_PAID, 'Paid'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_REFUNDED, 'Refunded'),
        (STATUS_NEEDS_RECONCILIATION, 'Needs reconciliation'),
    ]

    gateway_order_id = models.CharField(max_length=255, unique=True)
    payment_id = models.CharField(max_length=255, blank=True, db_index=True)
    signature = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=25,
        choices=STATUS_CHOICES,
        default=STATUS_CREATED
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='payment_records'
    )
    cycle = models.ForeignKey(
        'cycles.OrderCycle',
        on_delete=models.PROTECT,
        related_name='payment_records'
    )
    participant = models.ForeignKey(
        'cycles.Participant',
        on_delete=models.PROTECT,
        related_name='payment_records'
    )

    amount_minor_units = models.PositiveIntegerField()
    currency = models.CharField(max_length=3)
    receipt = models.CharField(max_length=100)
    failure_reason = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'payment_records'
        verbose_name = _('Payment Record')
        verbose_name_plural = _('Payment Records')
        indexes = [
            models.Index(fields=['cycle', 'status']),
            models.Index(fields=['participant', 'status']),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.gateway_order_id} ({self.status})"

    @property
    def amount_major_units(self) -> Decimal:
        return (Decimal(self.amount_minor_units) / 100).quantize(Decimal('0.01'))


class RefundRecord(models.Model):
    """A refund issued through the gateway against a payment."""
    payment = models.ForeignKey(
        PaymentRecord,
        on_delete=models.PROTECT,
        related_name='refunds'
    )
    gateway_refund_id = models.CharField(max_length=255, unique=True)
    amount_minor_units = models.PositiveIntegerField()
    status = models.CharField(max_length=30)
    reason = models.CharField(max_length=255, blank=True)
    processed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='processed_refunds',
        help_text="Admin who issued the refund; empty for automatic refunds"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'refund_records'
        verbose_name = _('Refund Record')
        verbose_name_plural = _('Refund Records')
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.gateway_refund_id} for {self.payment.gateway_order_id}"


class SignatureFailure(models.Model):
    """Audit entry for a payment or webhook signature that did not verify."""
    SOURCE_VERIFY = 'verify'
    SOURCE_WEBHOOK = 'webhook'
    SOURCE_CHOICES = [
        (SOURCE_VERIFY, 'Client verification'),
        (SOURCE_WEBHOOK, 'Webhook'),
    ]

    source = models.CharField(max_length=10, choices=SOURCE_CHOICES)
    gateway_order_id = models.CharField(max_length=255, blank=True)
    payment_id = models.CharField(max_length=255, blank=True)
    submitted_signature = models.CharField(max_length=255, blank=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    remote_addr = models.GenericIPAddressField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'payment_signature_failures'
        verbose_name = _('Signature Failure')
        verbose_name_plural = _('Signature Failures')
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.source} signature failure at {self.created_at}"


class WebhookEvent(models.Model):
    """Processed webhook deliveries, keyed for idempotency."""
    STATUS_PROCESSED = 'processed'
    STATUS_IGNORED = 'ignored'

    event_key = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=50)
    status = models.CharField(max_length=20, default=STATUS_PROCESSED)
    payload = models.JSONField(default=dict)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'payment_webhook_events'
        verbose_name = _('Webhook Event')
        verbose_name_plural = _('Webhook Events')
        ordering = ['-processed_at']

    def __str__(self):
        return f"{self.event_type} {self.event_key}"
