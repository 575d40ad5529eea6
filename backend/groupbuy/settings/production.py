"""
Production settings - used for deployment.
"""
import dj_database_url
import logging
from .base import *

logger = logging.getLogger(__name__)


def _env_list(name):
    """Comma-separated environment variable as a list, blanks dropped."""
    return [value.strip() for value in os.environ.get(name, '').split(',') if value.strip()]


DEBUG = os.environ.get('DEBUG', 'False').lower() == 'true'

ALLOWED_HOSTS = _env_list('ALLOWED_HOSTS')
if not ALLOWED_HOSTS:
    logger.warning(
        "ALLOWED_HOSTS environment variable not set. "
        "All requests will be rejected until it is configured."
    )

# Row locks in the cycle store need a database with SELECT ... FOR UPDATE
DATABASES = {
    'default': dj_database_url.config(
        default=os.environ.get('DATABASE_URL'),
        conn_max_age=600,
        conn_health_checks=True,
    )
}

LEDGER_TRANSACTION_MAX_ATTEMPTS = int(os.getenv('LEDGER_TRANSACTION_MAX_ATTEMPTS', 5))

SECURE_SSL_REDIRECT = False
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True
SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = 'DENY'

SECURE_HSTS_SECONDS = 31536000  # 1 year
SECURE_HSTS_INCLUDE_SUBDOMAINS = True
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')

# Channels layer for production
_redis_url = os.environ.get('REDIS_URL')
if _redis_url:
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels_redis.core.RedisChannelLayer',
            'CONFIG': {
                "hosts": [_redis_url],
            },
        },
    }
else:
    # Note: This won't work for multi-instance deployments
    logger.warning(
        "REDIS_URL not set. Using in-memory channel layer. "
        "Notifications will not reach sockets held by other instances."
    )
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels.layers.InMemoryChannelLayer',
        },
    }

CORS_ALLOWED_ORIGINS = _env_list('CORS_ALLOWED_ORIGINS')
if not CORS_ALLOWED_ORIGINS:
    logger.warning(
        "CORS_ALLOWED_ORIGINS environment variable not set! "
        "All cross-origin requests will be blocked."
    )

CORS_ALLOW_CREDENTIALS = True

if not PAYMENT_GATEWAY_KEY_SECRET or not PAYMENT_GATEWAY_WEBHOOK_SECRET:
    logger.warning(
        "Payment gateway secrets are not configured. "
        "Every payment verification and webhook will be rejected."
    )

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'groupbuy': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'django.request': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# Celery Configuration
CELERY_BROKER_URL = os.environ.get('REDIS_URL')
CELERY_RESULT_BACKEND = os.environ.get('REDIS_URL')
