"""
Celery tasks for order cycles.
Periodic deadline sweeps and payment reminders.
"""
from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task(name='advance_due_cycles')
def advance_due_cycles():
    """
    Apply elapsed collecting and payment deadlines.
    Runs every 5 minutes via Celery Beat. Reads apply the same
    transitions lazily, so a late run never changes the outcome.

    Returns:
        Dict with checked / advanced / failed counts
    """
    from apps.cycles.services.scheduler import PhaseScheduler

    try:
        stats = PhaseScheduler().advance_due_cycles()
        logger.info(
            f"Deadline sweep: {stats['advanced']} of {stats['checked']} "
            f"due cycles advanced"
        )
        return stats

    except Exception as e:
        logger.error(f"Error advancing due cycles: {str(e)}")
        raise


@shared_task(name='send_payment_reminders')
def send_payment_reminders():
    """
    Remind unpaid participants before their payment window closes.
    Runs every 30 minutes via Celery Beat.
    """
    from apps.cycles.services.scheduler import PhaseScheduler

    try:
        stats = PhaseScheduler().send_payment_reminders()
        if stats['reminded']:
            logger.info(
                f"Sent payment reminders to {stats['reminded']} participants "
                f"across {stats['cycles']} cycles"
            )
        return stats

    except Exception as e:
        logger.error(f"Error sending payment reminders: {str(e)}")
        raise
