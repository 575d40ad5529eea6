"""
Celery tasks for payments.
"""
from celery import shared_task
import logging

from apps.core.services.base import GatewayError

logger = logging.getLogger(__name__)


@shared_task(
    name='refund_cycle_payments',
    autoretry_for=(GatewayError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={'max_retries': 5}
)
def refund_cycle_payments(cycle_id):
    """
    Refund every paid participant of a cancelled cycle.
    Scheduled after the cancelling transaction commits. Already refunded
    payments are skipped, so retries only pick up the failures.

    Args:
        cycle_id: ID of the cancelled cycle

    Returns:
        Dict with refunded / failed counts
    """
    from apps.payments.services.reconciler import PaymentReconciler

    logger.info(f"Refunding payments for cancelled cycle {cycle_id}")

    return PaymentReconciler().refund_cycle_payments(cycle_id)
