# groupbuy/celery.py
import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE',
                      'groupbuy.settings.development')

app = Celery('groupbuy')

# Everything under CELERY_* in settings, including CELERY_BEAT_SCHEDULE
app.config_from_object('django.conf:settings', namespace='CELERY')

# ============================================================================
# BROKER
# ============================================================================
app.conf.broker_connection_retry_on_startup = True

# ============================================================================
# TASK EXECUTION
# ============================================================================
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']
app.conf.timezone = 'UTC'
app.conf.enable_utc = True
app.conf.result_expires = 3600

# Every task here is safe to run twice, so a worker crash re-delivers
# instead of dropping the message.
app.conf.task_acks_late = True
app.conf.task_reject_on_worker_lost = True
app.conf.worker_prefetch_multiplier = 1

app.conf.task_time_limit = 5 * 60
app.conf.task_soft_time_limit = 4 * 60

# Refunds call the gateway and may back off for minutes; keep them off the
# queue that carries deadline sweeps and notifications.
app.conf.task_routes = {
    'refund_cycle_payments': {'queue': 'payments'},
    'deliver_domain_events': {'queue': 'notifications'},
    'cleanup_notification_logs': {'queue': 'notifications'},
}
app.conf.task_default_queue = 'cycles'

app.autodiscover_tasks()
