"""Django settings for the storefront order core.

Every value can be overridden from the environment. Application code reads
optional knobs through ``getattr(settings, NAME, default)`` so tests can
tweak them with the pytest-django ``settings`` fixture.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.catalog",
    "apps.orders",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
    "gateway.identity.IdentityMiddleware",
]

ROOT_URLCONF = "storefront.urls"
WSGI_APPLICATION = "storefront.wsgi.application"

# ---- Database ----
if os.getenv("DB_ENGINE", "postgresql") == "sqlite":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", str(BASE_DIR / "storefront.sqlite3")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST", "orders-db"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "orders"),
            "USER": os.getenv("DB_USER", "orders_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "orders-pass"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- DRF ----
REST_FRAMEWORK = {
    # Identity comes from gateway.identity.IdentityMiddleware, not DRF auth.
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "30/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "payments_poll": os.getenv("THROTTLE_PAYMENTS_POLL", "120/min"),
    },
}

API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1024 * 1024)))

# ---- Identity (trusted auth proxy) ----
IDENTITY_PROXY_SECRET = os.getenv("IDENTITY_PROXY_SECRET", "")
ADMIN_ROLE = os.getenv("ADMIN_ROLE", "admin")

# ---- Orders / payments ----
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "TZS")
SUPPORTED_CURRENCIES = set(os.getenv("SUPPORTED_CURRENCIES", "TZS,USD,EUR,KES,UGX").split(","))

MOBILE_MONEY_POLL_INTERVAL_SECS = float(os.getenv("MOBILE_MONEY_POLL_INTERVAL_SECS", "2"))
MOBILE_MONEY_POLL_TIMEOUT_SECS = float(os.getenv("MOBILE_MONEY_POLL_TIMEOUT_SECS", "30"))
MOBILE_MONEY_MAX_ATTEMPTS = int(os.getenv("MOBILE_MONEY_MAX_ATTEMPTS", "5"))
# Pending attempts older than this are picked up by the reconcile sweep.
MOBILE_MONEY_RECONCILE_AFTER_SECS = int(os.getenv("MOBILE_MONEY_RECONCILE_AFTER_SECS", "600"))

# ---- Downstream services ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", True)
PAYMENT_PROVIDER_BASE_URL = os.getenv("PAYMENT_PROVIDER_BASE_URL", "http://payment-provider:9002")
PAYMENT_PROVIDER_API_KEY = os.getenv("PAYMENT_PROVIDER_API_KEY", "")
PAYMENT_WEBHOOK_URL = os.getenv("PAYMENT_WEBHOOK_URL", "")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
NOTIFICATIONS_BASE_URL = os.getenv("NOTIFICATIONS_BASE_URL", "http://notifications:9003")
CACHE_INVALIDATION_URL = os.getenv("CACHE_INVALIDATION_URL", "http://storefront-web:3000/api/cache/invalidate")
SIDE_EFFECTS_ASYNC = _env_bool("SIDE_EFFECTS_ASYNC", True)
SIDE_EFFECTS_WORKERS = int(os.getenv("SIDE_EFFECTS_WORKERS", "4"))

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "httpx": {"level": "WARNING"},
        "django.db.backends": {"level": "WARNING"},
    },
}
