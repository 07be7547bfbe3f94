from dotenv import load_dotenv
load_dotenv()

import os
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str = "") -> list:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = _env_list("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "catalog",
    "orders",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "bookstore.urls"
WSGI_APPLICATION = "bookstore.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
        "ATOMIC_REQUESTS": False,
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

# Email (notification delivery)
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "25"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "noreply@bookstore.local")
EMAIL_FAIL_SILENTLY = _env_bool("EMAIL_FAIL_SILENTLY", "false")
PAYMENTS_ADMIN_EMAILS = os.getenv("PAYMENTS_ADMIN_EMAILS", "")

# VNPay gateway. HASH_SECRET is only ever used to sign/verify, never sent.
VNPAY = {
    "TMN_CODE": os.getenv("VNPAY_TMN_CODE", ""),
    "HASH_SECRET": os.getenv("VNPAY_HASH_SECRET", ""),
    "PAY_URL": os.getenv("VNPAY_PAY_URL", "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"),
    "API_URL": os.getenv("VNPAY_API_URL", "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"),
    "RETURN_URL": os.getenv("VNPAY_RETURN_URL", "http://localhost:8000/payments/vnpay/return"),
    "TIMEOUT_MINUTES": int(os.getenv("VNPAY_TIMEOUT_MINUTES", "15")),
    "VERSION": os.getenv("VNPAY_VERSION", "2.1.0"),
    "COMMAND": os.getenv("VNPAY_COMMAND", "pay"),
    "ORDER_TYPE": os.getenv("VNPAY_ORDER_TYPE", "other"),
    "LOCALE": os.getenv("VNPAY_LOCALE", "vn"),
    "CURRENCY": os.getenv("VNPAY_CURRENCY", "VND"),
    "HTTP_TIMEOUT": float(os.getenv("VNPAY_HTTP_TIMEOUT", "10")),
}

# Checkout pricing policy
ORDER_PRICING = {
    "FREE_SHIPPING_THRESHOLD": Decimal(os.getenv("ORDER_FREE_SHIPPING_THRESHOLD", "500000")),
    "SHIPPING_FEE": Decimal(os.getenv("ORDER_SHIPPING_FEE", "30000")),
    "DISCOUNT_THRESHOLD": Decimal(os.getenv("ORDER_DISCOUNT_THRESHOLD", "1000000")),
    "DISCOUNT_RATE": Decimal(os.getenv("ORDER_DISCOUNT_RATE", "0.05")),
    "TAX_RATE": Decimal(os.getenv("ORDER_TAX_RATE", "0.10")),
    "CURRENCY": os.getenv("ORDER_CURRENCY", "VND"),
}

MAX_ITEM_QUANTITY = int(os.getenv("MAX_ITEM_QUANTITY", "50"))
MAX_PENDING_ORDERS = int(os.getenv("MAX_PENDING_ORDERS", "3"))
ORDER_PAYMENT_WINDOW_HOURS = int(os.getenv("ORDER_PAYMENT_WINDOW_HOURS", "24"))
PAYMENT_SWEEP_INTERVAL_SECONDS = int(os.getenv("PAYMENT_SWEEP_INTERVAL_SECONDS", "300"))
PAYMENT_EVENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_EVENT_MAX_ATTEMPTS", "5"))
PAYMENT_SWEEP_HISTORY = int(os.getenv("PAYMENT_SWEEP_HISTORY", "500"))
ORDER_PAGE_SIZE = int(os.getenv("ORDER_PAGE_SIZE", "10"))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "catalog": {"handlers": ["console"], "level": os.getenv("APP_LOG_LEVEL", "INFO")},
        "orders": {"handlers": ["console"], "level": os.getenv("APP_LOG_LEVEL", "INFO")},
        "payments": {"handlers": ["console"], "level": os.getenv("APP_LOG_LEVEL", "INFO")},
    },
}
