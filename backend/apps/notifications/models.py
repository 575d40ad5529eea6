# apps/notifications/models.py

from django.db import models
from django.utils.translation import gettext_lazy as _


class NotificationLog(models.Model):
    """
    Delivery record for one domain event. Written after the ledger
    transaction has committed, so a failed delivery never affects it.
    """
    STATUS_SENT = 'sent'
    STATUS_PARTIAL = 'partial'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = [
        (STATUS_SENT, 'Sent'),
        (STATUS_PARTIAL, 'Partially sent'),
        (STATUS_FAILED, 'Failed'),
    ]

    event_type = models.CharField(max_length=40)
    cycle_id = models.IntegerField(db_index=True)
    user_ids = models.JSONField(default=list, blank=True)
    title = models.CharField(max_length=200, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES)
    delivered_count = models.PositiveIntegerField(default=0)
    error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notification_logs'
        verbose_name = _('Notification Log')
        verbose_name_plural = _('Notification Logs')
        indexes = [
            models.Index(fields=['event_type', 'created_at']),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.event_type} for cycle {self.cycle_id} ({self.status})"
