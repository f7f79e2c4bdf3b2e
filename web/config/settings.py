"""Django settings for the storefront web tier.

Every value can be overridden from the environment; the defaults target
local development against sqlite. Set ``USE_HTTP_ADAPTERS=0`` to run
against the in-process stubs instead of the backend services.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.storefront",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
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

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "storefront",
    }
}

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_THROTTLE_RATES": {
        "cart": os.getenv("THROTTLE_CART", "600/min"),
        "pricing": os.getenv("THROTTLE_PRICING", "600/min"),
        "checkout": os.getenv("THROTTLE_CHECKOUT", "30/min"),
    },
}

# ---- storefront ----
CANONICAL_CURRENCY = os.getenv("CANONICAL_CURRENCY", "CAD")
TAX_RATE = os.getenv("TAX_RATE", "0.02")
SHIPPING_DOMESTIC_COUNTRY = os.getenv("SHIPPING_DOMESTIC_COUNTRY", "CA")
SHIPPING_LOCAL_REGIONS = tuple(r for r in os.getenv("SHIPPING_LOCAL_REGIONS", "ON").split(",") if r)
SHIPPING_DOMESTIC_RATE = os.getenv("SHIPPING_DOMESTIC_RATE", "15.00")
SHIPPING_INTERNATIONAL_RATE = os.getenv("SHIPPING_INTERNATIONAL_RATE", "30.00")

RATE_CACHE_TTL_SECS = int(os.getenv("RATE_CACHE_TTL_SECS", str(12 * 60 * 60)))
EXCHANGE_API_KEY = os.getenv("EXCHANGE_API_KEY", "")
EXCHANGE_API_BASE_URL = os.getenv("EXCHANGE_API_BASE_URL", "https://v6.exchangerate-api.com/v6")
RATES_FALLBACK_URL = os.getenv("RATES_FALLBACK_URL", "http://localhost:8000/api/rates")
GEO_API_URL = os.getenv("GEO_API_URL", "https://ipapi.co/json/")
GEO_API_IP_URL = os.getenv("GEO_API_IP_URL", "https://ipapi.co/{ip}/json/")
LOCATION_CACHE_TTL_SECS = int(os.getenv("LOCATION_CACHE_TTL_SECS", str(24 * 60 * 60)))

# ---- downstream services ----
USE_HTTP_ADAPTERS = env_bool("USE_HTTP_ADAPTERS", True)
INVENTORY_BASE_URL = os.getenv("INVENTORY_BASE_URL", "http://localhost:8001")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://localhost:8002")
NOTIFY_API_URL = os.getenv("NOTIFY_API_URL", "https://api.emailjs.com/api/v1.0/email/send")
NOTIFY_SERVICE_ID = os.getenv("NOTIFY_SERVICE_ID", "")
NOTIFY_TEMPLATE_ID = os.getenv("NOTIFY_TEMPLATE_ID", "order_confirmation")
NOTIFY_USER_ID = os.getenv("NOTIFY_USER_ID", "")

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
    "loggers": {
        "django": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "INFO"), "propagate": False},
        "storefront": {"level": os.getenv("STOREFRONT_LOG_LEVEL", "INFO")},
    },
}
