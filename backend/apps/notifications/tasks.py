"""
Celery tasks for notification delivery.
"""
from celery import shared_task
from django.utils import timezone
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


@shared_task(name='deliver_domain_events')
def deliver_domain_events(payloads):
    """
    Deliver committed domain events to the notification sink.

    Args:
        payloads: List of DomainEvent.as_dict() payloads

    Returns:
        Dict with delivered / failed counts
    """
    from apps.notifications.dispatcher import EventDispatcher

    stats = EventDispatcher().deliver(payloads)

    if stats['failed']:
        logger.warning(
            f"Delivered {stats['delivered']} events, {stats['failed']} failed"
        )

    return stats


@shared_task(name='cleanup_notification_logs')
def cleanup_notification_logs(days=30):
    """
    Delete delivery logs older than the retention period.
    Runs weekly via Celery Beat.
    """
    from apps.notifications.models import NotificationLog

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = NotificationLog.objects.filter(created_at__lt=cutoff).delete()

    logger.info(f"Deleted {deleted} notification logs older than {days} days")

    return {'deleted': deleted}
