# apps/cycles/models.py

from decimal import Decimal
from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class BuyingGroup(models.Model):
    """
    A standing group of buyers. Each group runs one order cycle at a time.
    """
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)

    # Defaults copied onto every new cycle
    collecting_hours = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Length of the collecting phase (defaults to CYCLE_COLLECTING_HOURS)"
    )
    payment_window_hours = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Length of the payment window (defaults to CYCLE_PAYMENT_WINDOW_HOURS)"
    )
    allow_mid_cycle_joins = models.BooleanField(
        default=False,
        help_text="Accept orders for already-open products during the payment window"
    )
    currency = models.CharField(max_length=3, default='INR')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'buying_groups'
        verbose_name = _('Buying Group')
        verbose_name_plural = _('Buying Groups')
        ordering = ['name']

    def __str__(self):
        return self.name

    def get_collecting_hours(self) -> int:
        return self.collecting_hours or settings.CYCLE_COLLECTING_HOURS

    def get_payment_window_hours(self) -> int:
        return self.payment_window_hours or settings.CYCLE_PAYMENT_WINDOW_HOURS


class OrderCycle(models.Model):
    """
    One buying round for a group: orders are collected, paid for, then
    fulfilled or cancelled as a whole.
    """
    PHASE_COLLECTING = 'collecting'
    PHASE_PAYMENT_WINDOW = 'payment_window'
    PHASE_CONFIRMED = 'confirmed'
    PHASE_PROCESSING = 'processing'
    PHASE_COMPLETED = 'completed'
    PHASE_CANCELLED = 'cancelled'

    PHASE_CHOICES = [
        (PHASE_COLLECTING, 'Collecting orders'),
        (PHASE_PAYMENT_WINDOW, 'Payment window open'),
        (PHASE_CONFIRMED, 'Confirmed'),
        (PHASE_PROCESSING, 'Processing'),
        (PHASE_COMPLETED, 'Completed'),
        (PHASE_CANCELLED, 'Cancelled'),
    ]

    OPEN_PHASES = (PHASE_COLLECTING, PHASE_PAYMENT_WINDOW)
    TERMINAL_PHASES = (PHASE_COMPLETED, PHASE_CANCELLED)

    group = models.ForeignKey(
        BuyingGroup,
        on_delete=models.PROTECT,
        related_name='cycles'
    )
    phase = models.CharField(
        max_length=20,
        choices=PHASE_CHOICES,
        default=PHASE_COLLECTING
    )

    # Deadlines
    collecting_ends_at = models.DateTimeField()
    payment_window_ends_at = models.DateTimeField(null=True, blank=True)

    # Derived state, recomputed from active participants on every mutation
    product_aggregates = models.JSONField(
        default=dict,
        blank=True,
        help_text="product_id -> {quantity, min_quantity, name, unit_price}"
    )
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )
    total_participants = models.PositiveIntegerField(default=0)
    min_quantity_met = models.BooleanField(default=False)

    allow_mid_cycle_joins = models.BooleanField(default=False)
    open_product_ids = models.JSONField(
        default=list,
        blank=True,
        help_text="Products that may still be ordered once the payment window opens"
    )
    currency = models.CharField(max_length=3, default='INR')

    # Optimistic concurrency counter, bumped on every committed write
    version = models.PositiveIntegerField(default=0)

    cancellation_reason = models.CharField(max_length=100, blank=True)
    is_archived = models.BooleanField(default=False)

    payment_window_opened_at = models.DateTimeField(null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    processing_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'order_cycles'
        verbose_name = _('Order Cycle')
        verbose_name_plural = _('Order Cycles')
        constraints = [
            models.UniqueConstraint(
                fields=['group'],
                condition=Q(phase__in=['collecting', 'payment_window']),
                name='one_open_cycle_per_group'
            ),
        ]
        indexes = [
            models.Index(fields=['phase', 'collecting_ends_at']),
            models.Index(fields=['phase', 'payment_window_ends_at']),
            models.Index(fields=['group', 'phase']),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.group.name} cycle #{self.pk} ({self.phase})"

    @property
    def is_open(self) -> bool:
        return self.phase in self.OPEN_PHASES

    @property
    def is_terminal(self) -> bool:
        return self.phase in self.TERMINAL_PHASES

    @property
    def next_deadline(self):
        if self.phase == self.PHASE_COLLECTING:
            return self.collecting_ends_at
        if self.phase == self.PHASE_PAYMENT_WINDOW:
            return self.payment_window_ends_at
        return None

    @property
    def time_remaining(self):
        """Time until the current phase's deadline, if it has one."""
        deadline = self.next_deadline
        if deadline and deadline > timezone.now():
            return deadline - timezone.now()
        return None


class Participant(models.Model):
    """
    One user's order within a cycle. Created on first submission and
    updated in place afterwards; never deleted.
    """
    PAYMENT_PENDING = 'pending'
    PAYMENT_PAID = 'paid'
    PAYMENT_FAILED = 'failed'
    PAYMENT_REFUNDED = 'refunded'
    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_PENDING, 'Pending'),
        (PAYMENT_PAID, 'Paid'),
        (PAYMENT_FAILED, 'Failed'),
        (PAYMENT_REFUNDED, 'Refunded'),
    ]

    ORDER_PLACED = 'placed'
    ORDER_CONFIRMED = 'confirmed'
    ORDER_DELIVERED = 'delivered'
    ORDER_CANCELLED = 'cancelled'
    ORDER_STATUS_CHOICES = [
        (ORDER_PLACED, 'Placed'),
        (ORDER_CONFIRMED, 'Confirmed'),
        (ORDER_DELIVERED, 'Delivered'),
        (ORDER_CANCELLED, 'Cancelled'),
    ]

    REASON_WITHDRAWN = 'withdrawn'
    REASON_UNPAID = 'unpaid'
    REASON_CYCLE_CANCELLED = 'cycle_cancelled'
    CANCELLATION_REASON_CHOICES = [
        (REASON_WITHDRAWN, 'Withdrawn by participant'),
        (REASON_UNPAID, 'Not paid before the payment window closed'),
        (REASON_CYCLE_CANCELLED, 'Cycle cancelled'),
    ]

    cycle = models.ForeignKey(
        OrderCycle,
        on_delete=models.CASCADE,
        related_name='participants'
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='cycle_participations'
    )
    user_name = models.CharField(max_length=200, blank=True)

    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PAYMENT_STATUS_CHOICES,
        default=PAYMENT_PENDING
    )
    order_status = models.CharField(
        max_length=20,
        choices=ORDER_STATUS_CHOICES,
        default=ORDER_PLACED
    )
    cancellation_reason = models.CharField(
        max_length=20,
        choices=CANCELLATION_REASON_CHOICES,
        blank=True
    )

    joined_at = models.DateTimeField(default=timezone.now)
    paid_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'cycle_participants'
        verbose_name = _('Participant')
        verbose_name_plural = _('Participants')
        # One entry per user per cycle
        unique_together = [['cycle', 'user']]
        indexes = [
            models.Index(fields=['cycle', 'order_status']),
            models.Index(fields=['cycle', 'payment_status']),
        ]
        ordering = ['joined_at', 'id']

    def __str__(self):
        return f"{self.user_name or self.user_id} in cycle {self.cycle_id}"

    @property
    def is_active(self) -> bool:
        return self.order_status != self.ORDER_CANCELLED


class ParticipantItem(models.Model):
    """A single product line in a participant's order."""
    participant = models.ForeignKey(
        Participant,
        on_delete=models.CASCADE,
        related_name='items'
    )
    product_id = models.CharField(max_length=100)
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Group rate per unit"
    )
    retail_unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True
    )
    min_quantity = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
        help_text="Cycle-wide minimum for this product"
    )

    class Meta:
        db_table = 'cycle_participant_items'
        unique_together = [['participant', 'product_id']]
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity} x {self.name}"

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def as_dict(self):
        return {
            'product_id': self.product_id,
            'name': self.name,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'retail_unit_price': self.retail_unit_price,
            'min_quantity': self.min_quantity,
        }


class CycleEvent(models.Model):
    """
    Append-only audit trail of ledger and phase events for a cycle.
    """
    cycle = models.ForeignKey(
        OrderCycle,
        on_delete=models.CASCADE,
        related_name='events'
    )
    event_type = models.CharField(max_length=40)
    event_data = models.JSONField(
        default=dict,
        help_text="Additional event data"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'cycle_events'
        verbose_name = _('Cycle Event')
        verbose_name_plural = _('Cycle Events')
        indexes = [
            models.Index(fields=['cycle', 'created_at']),
            models.Index(fields=['event_type']),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"cycle {self.cycle_id} - {self.event_type} - {self.created_at}"
