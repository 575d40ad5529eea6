"""
Test settings - optimized for fast test runs.
"""
from pathlib import Path
from datetime import timedelta

# Project root directory
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Override SECRET_KEY for tests
SECRET_KEY = 'test-secret-key-only-for-testing-do-not-use-in-production'

# Debug for better error messages
DEBUG = True

ALLOWED_HOSTS = ['testserver', 'localhost', '127.0.0.1']

DJANGO_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
]

THIRD_PARTY_APPS = [
    'rest_framework',
    'channels',
    'corsheaders',
    'django_filters',
    'drf_spectacular',
]

LOCAL_APPS = [
    'apps.core',
    'apps.cycles',
    'apps.payments',
    'apps.notifications',
]

INSTALLED_APPS = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'groupbuy.middleware.RequestLoggingMiddleware',
]

# Database - SQLite for tests
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'test_db.sqlite3',
    }
}

ROOT_URLCONF = 'groupbuy.urls'

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

ASGI_APPLICATION = 'groupbuy.asgi.application'

AUTH_USER_MODEL = 'core.User'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Password validation (simplified for tests)
AUTH_PASSWORD_VALIDATORS = []

# Password hasher (fast for tests)
PASSWORD_HASHERS = [
    'django.contrib.auth.hashers.MD5PasswordHasher',
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'

# Cache (in-memory for tests)
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    }
}

# Channels (in-memory for tests)
CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels.layers.InMemoryChannelLayer'
    }
}

# Celery (synchronous for tests)
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

# Payment gateway
PAYMENT_GATEWAY_CLASS = 'apps.payments.services.gateway.StripeGateway'
STRIPE_SECRET_KEY = 'sk_test_dummy'
PAYMENT_GATEWAY_KEY_SECRET = 'test-key-secret'
PAYMENT_GATEWAY_WEBHOOK_SECRET = 'test-webhook-secret'
PAYMENT_GATEWAY_TIMEOUT_SECONDS = 5
PAYMENT_GATEWAY_MAX_RETRIES = 0
PAYMENT_DEFAULT_CURRENCY = 'INR'

NOTIFICATION_SINK_CLASS = 'apps.notifications.sink.ChannelsNotificationSink'
NOTIFICATION_BATCH_SIZE = 500

CYCLE_COLLECTING_HOURS = 48
CYCLE_PAYMENT_WINDOW_HOURS = 24
PAYMENT_REMINDER_LEAD_HOURS = 6

LEDGER_TRANSACTION_MAX_ATTEMPTS = 3
LEDGER_RETRY_BASE_DELAY = 0
LEDGER_RETRY_MAX_DELAY = 0


# Django REST Framework
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework_simplejwt.authentication.JWTAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
    'EXCEPTION_HANDLER': 'apps.core.exceptions.api_exception_handler',
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
}

SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(minutes=60),
    'SIGNING_KEY': SECRET_KEY,
    'USER_ID_FIELD': 'id',
    'USER_ID_CLAIM': 'user_id',
}

# Logging (minimal for tests)
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',  # Only warnings and errors
        },
    },
}

REQUEST_LOGGING_ENABLED = False

TEST_RUNNER = 'django.test.runner.DiscoverRunner'

# Disable migrations for faster tests


class DisableMigrations:
    def __contains__(self, item):
        return True

    def __getitem__(self, item):
        return None


MIGRATION_MODULES = DisableMigrations()
