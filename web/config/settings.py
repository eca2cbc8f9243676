"""Django settings for the order fulfillment service.

Every tunable is read from the environment so the same image can run
against local SQLite, docker-compose Postgres, or production. Provider
adapters default to the in-process simulated implementations; set
``USE_HTTP_ADAPTERS=1`` to talk to the real payment gateway and couriers.
"""

import json
import os
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "gateway.middleware.AccessLogMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# ---- Database ----
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "orders"),
            "USER": os.getenv("DB_USER", "orders_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "orders-pass"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- Cache (rate limiting, DRF throttles) ----
CACHES = {
    "default": {
        "BACKEND": os.getenv("CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("CACHE_LOCATION", "orders-default"),
    }
}

# ---- E-mail (notification gateway) ----
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS", True)
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "orders@bookmarket.local")
ADMIN_REPORT_EMAIL = os.getenv("ADMIN_REPORT_EMAIL", "")

NOTIFY_RATE_LIMIT = int(os.getenv("NOTIFY_RATE_LIMIT", "10"))
NOTIFY_RATE_WINDOW_SECS = int(os.getenv("NOTIFY_RATE_WINDOW_SECS", "60"))

# ---- Providers ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", False)

PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://payment-sandbox:9002")
PAYMENTS_SECRET_KEY = os.getenv("PAYMENTS_SECRET_KEY", "sk_test_sandbox")
PAYMENTS_CALLBACK_URL = os.getenv("PAYMENTS_CALLBACK_URL", "http://localhost:8000/payments/callback")
WEBHOOK_SIGNATURE_HEADER = os.getenv("WEBHOOK_SIGNATURE_HEADER", "X-Signature")
WEBHOOK_DEDUP_DAYS = int(os.getenv("WEBHOOK_DEDUP_DAYS", "7"))

# Shared secret couriers sign tracking pushes with (hex HMAC-SHA512 of the body).
DELIVERY_WEBHOOK_SECRET = os.getenv("DELIVERY_WEBHOOK_SECRET", "whsec_courier_sandbox")
DELIVERY_SIGNATURE_HEADER = os.getenv("DELIVERY_SIGNATURE_HEADER", "X-Courier-Signature")

# JSON list of {"name", "base_url", "api_key"}; order is failover order.
DELIVERY_PROVIDERS = json.loads(
    os.getenv(
        "DELIVERY_PROVIDERS",
        '[{"name": "courier-sandbox", "base_url": "http://courier-sandbox:9001", "api_key": ""}]',
    )
)

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- Order engine ----
ORDER_CURRENCY = os.getenv("ORDER_CURRENCY", "ZAR")
ORDER_COMMIT_WINDOW_HOURS = int(os.getenv("ORDER_COMMIT_WINDOW_HOURS", "48"))
ORDER_REMINDER_AFTER_HOURS = int(os.getenv("ORDER_REMINDER_AFTER_HOURS", "24"))
CHECKOUT_RESERVATION_MINUTES = int(os.getenv("CHECKOUT_RESERVATION_MINUTES", "15"))
PAYOUT_RESEND_AFTER_MINUTES = int(os.getenv("PAYOUT_RESEND_AFTER_MINUTES", "60"))
COMMISSION_POLICY = os.getenv("COMMISSION_POLICY", "v1")

API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

# ---- DRF ----
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "checkout": os.getenv("THROTTLE_CHECKOUT", "30/min"),
        "order_actions": os.getenv("THROTTLE_ORDER_ACTIONS", "60/min"),
        "delivery": os.getenv("THROTTLE_DELIVERY", "120/min"),
    },
}

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
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s",
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
        "django": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "WARNING"), "propagate": False},
        "apps.orders": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "gateway": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}
