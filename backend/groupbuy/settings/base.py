"""
Base Django settings for the Group Buy project.

Contains all common settings used across all environments.
Environment-specific settings should override these in their respective files.
"""
import os
from pathlib import Path
from datetime import timedelta
from celery.schedules import crontab
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory (three levels up from this file)
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Security
SECRET_KEY = os.environ.get('SECRET_KEY')
if not SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable is not set!")

# Core Django applications
DJANGO_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
]

# Third-party applications
THIRD_PARTY_APPS = [
    'rest_framework',
    'rest_framework_simplejwt',
    'rest_framework_simplejwt.token_blacklist',
    'channels',
    'corsheaders',
    'django_filters',
    'drf_spectacular',
]

# Project applications
LOCAL_APPS = [
    'apps.core',
    'apps.cycles',
    'apps.payments',
    'apps.notifications',
]

INSTALLED_APPS = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

# Middleware configuration
MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'groupbuy.middleware.RequestLoggingMiddleware',
]

# URL configuration
ROOT_URLCONF = 'groupbuy.urls'

# Template configuration
TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# ASGI configuration
ASGI_APPLICATION = 'groupbuy.asgi.application'

# Channels Layer Configuration
CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels_redis.core.RedisChannelLayer',
        'CONFIG': {
            "hosts": [(os.environ.get('REDIS_HOST', '127.0.0.1'),
                      int(os.environ.get('REDIS_PORT', 6379)))],
            "capacity": 1500,  # Maximum number of messages to store
            "expiry": 10,  # Seconds
        },
    },
}

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Static files configuration
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Primary key field configuration
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
AUTH_USER_MODEL = 'core.User'

# Authentication backends
AUTHENTICATION_BACKENDS = [
    'django.contrib.auth.backends.ModelBackend',
]

# Payment gateway configuration
PAYMENT_GATEWAY_CLASS = os.getenv(
    'PAYMENT_GATEWAY_CLASS', 'apps.payments.services.gateway.StripeGateway')
STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
# Shared secrets for HMAC checks on client callbacks and webhooks
PAYMENT_GATEWAY_KEY_SECRET = os.getenv('PAYMENT_GATEWAY_KEY_SECRET', '')
PAYMENT_GATEWAY_WEBHOOK_SECRET = os.getenv(
    'PAYMENT_GATEWAY_WEBHOOK_SECRET', '')
PAYMENT_GATEWAY_TIMEOUT_SECONDS = int(
    os.getenv('PAYMENT_GATEWAY_TIMEOUT_SECONDS', 20))
PAYMENT_GATEWAY_MAX_RETRIES = int(os.getenv('PAYMENT_GATEWAY_MAX_RETRIES', 2))
PAYMENT_DEFAULT_CURRENCY = os.getenv('PAYMENT_DEFAULT_CURRENCY', 'INR')

# Notification sink
NOTIFICATION_SINK_CLASS = os.getenv(
    'NOTIFICATION_SINK_CLASS',
    'apps.notifications.sink.ChannelsNotificationSink'
)
NOTIFICATION_BATCH_SIZE = 500

# Order cycle timing
CYCLE_COLLECTING_HOURS = int(os.getenv('CYCLE_COLLECTING_HOURS', 48))
CYCLE_PAYMENT_WINDOW_HOURS = int(os.getenv('CYCLE_PAYMENT_WINDOW_HOURS', 24))
PAYMENT_REMINDER_LEAD_HOURS = int(os.getenv('PAYMENT_REMINDER_LEAD_HOURS', 6))

# Ledger transaction retries (optimistic version check + row lock)
LEDGER_TRANSACTION_MAX_ATTEMPTS = 5
LEDGER_RETRY_BASE_DELAY = 0.05  # seconds
LEDGER_RETRY_MAX_DELAY = 1.0  # seconds

# Django REST Framework configuration
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework_simplejwt.authentication.JWTAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
        'rest_framework.filters.OrderingFilter',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
        'rest_framework.renderers.BrowsableAPIRenderer',
    ],
    'DEFAULT_THROTTLE_CLASSES': [
        'rest_framework.throttling.AnonRateThrottle',
        'rest_framework.throttling.UserRateThrottle',
    ],
    'DEFAULT_THROTTLE_RATES': {
        'anon': '100/hour',
        'user': '1000/hour',
    },
    'EXCEPTION_HANDLER': 'apps.core.exceptions.api_exception_handler',
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
}

# JWT Authentication configuration
SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(minutes=60),
    'REFRESH_TOKEN_LIFETIME': timedelta(days=7),
    'ROTATE_REFRESH_TOKENS': True,
    'BLACKLIST_AFTER_ROTATION': True,
    'UPDATE_LAST_LOGIN': False,

    'ALGORITHM': 'HS256',
    'SIGNING_KEY': SECRET_KEY,

    'AUTH_HEADER_TYPES': ('Bearer',),
    'AUTH_HEADER_NAME': 'HTTP_AUTHORIZATION',
    'USER_ID_FIELD': 'id',
    'USER_ID_CLAIM': 'user_id',

    'AUTH_TOKEN_CLASSES': ('rest_framework_simplejwt.tokens.AccessToken',),
    'TOKEN_TYPE_CLAIM': 'token_type',
    'JTI_CLAIM': 'jti',
}

# drf-spectacular settings for API documentation
SPECTACULAR_SETTINGS = {
    'TITLE': 'Group Buy API',
    'DESCRIPTION': 'Group buying order cycles with shared minimum quantities',
    'VERSION': '1.0.0',
    'SERVE_INCLUDE_SCHEMA': False,
    'SWAGGER_UI_SETTINGS': {
        'deepLinking': True,
        'persistAuthorization': True,
    },
    'COMPONENT_SPLIT_REQUEST': True,
    'SCHEMA_PATH_PREFIX': '/api/v1/',
}


# Celery Configuration for Periodic Tasks
CELERY_BEAT_SCHEDULE = {
    'advance-due-cycles-every-5-min': {
        'task': 'advance_due_cycles',
        'schedule': crontab(minute='*/5'),
    },
    'send-payment-reminders-every-30-min': {
        'task': 'send_payment_reminders',
        'schedule': crontab(minute='*/30'),
    },
    'cleanup-old-notification-logs-weekly': {
        'task': 'cleanup_notification_logs',
        'schedule': crontab(hour=3, minute=0, day_of_week=0),  # Sunday 3 AM
    },
}

# Logging configuration - Base (Console only by default)
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
            'style': '{',
        },
        'simple': {
            'format': '{levelname} {message}',
            'style': '{',
        },
    },
    'filters': {
        'require_debug_false': {
            '()': 'django.utils.log.RequireDebugFalse',
        },
        'require_debug_true': {
            '()': 'django.utils.log.RequireDebugTrue',
        },
    },
    'handlers': {
        'console': {
            'level': 'INFO',
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.getenv('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'groupbuy': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'groupbuy.requests': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# Request logging settings (for custom middleware)
REQUEST_LOGGING_ENABLED = os.getenv(
    'REQUEST_LOGGING_ENABLED', 'False').lower() == 'true'
