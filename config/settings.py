from __future__ import annotations

import os
import socket
import warnings
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = os.getenv("DEBUG", "false").lower() == "true"
SECRET_KEY = os.getenv("SECRET_KEY", "changeme-in-prod")
if not DEBUG and SECRET_KEY.strip() in {"", "changeme-in-prod", "change-me"}:
    warnings.warn(
        "Insecure SECRET_KEY detected with DEBUG=false. Set a strong SECRET_KEY in environment.",
        RuntimeWarning,
    )

USE_SQLITE = os.getenv("USE_SQLITE", "false").lower() == "true"
_allowed_hosts_raw = os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost")
ALLOWED_HOSTS = [h.strip() for h in _allowed_hosts_raw.split(",") if h.strip()]
if not ALLOWED_HOSTS:
    ALLOWED_HOSTS = ["127.0.0.1", "localhost"]
if not DEBUG and "*" in ALLOWED_HOSTS:
    warnings.warn(
        "ALLOWED_HOSTS contained '*' with DEBUG=false; falling back to localhost-only hosts.",
        RuntimeWarning,
    )
    ALLOWED_HOSTS = ["127.0.0.1", "localhost"]


def _csv_env(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_ladder_limits(raw: str) -> list[dict]:
    """
    Parse LIMIT legs from "ratio:divider" pairs, e.g. "1.5:4,3:4,5:4".
    Malformed pairs are ignored.
    """
    legs: list[dict] = []
    for chunk in str(raw or "").split(","):
        parts = [p.strip() for p in chunk.split(":")]
        if len(parts) != 2:
            continue
        try:
            ratio = float(parts[0])
            divider = float(parts[1])
        except ValueError:
            continue
        if ratio <= 0 or divider <= 0:
            continue
        legs.append({"price_ratio_percentage": ratio, "amount_divider": divider})
    return legs


# -- Job poller --
JOB_POLLER_MAX_PARALLEL = max(1, int(os.getenv("JOB_POLLER_MAX_PARALLEL", "3")))
JOB_POLLER_INTERVAL_SECONDS = max(0.2, float(os.getenv("JOB_POLLER_INTERVAL_SECONDS", "1.0")))
JOB_POLLER_QUEUE_NAME = os.getenv("JOB_POLLER_QUEUE_NAME", "").strip() or socket.gethostname()
JOB_LEASE_TIMEOUT_SECONDS = max(30, int(os.getenv("JOB_LEASE_TIMEOUT_SECONDS", "600")))

# -- Order dispatch --
ORDER_DISPATCH_RETRY_SECONDS = max(1, int(os.getenv("ORDER_DISPATCH_RETRY_SECONDS", "5")))
ORDER_DISPATCH_MAX_DEFERRALS = max(1, int(os.getenv("ORDER_DISPATCH_MAX_DEFERRALS", "24")))

# -- Position ladder plan (snapshotted into Position.trade_configuration) --
POSITION_AMOUNT_PERCENTAGE_PER_TRADE = max(
    0.1,
    min(100.0, float(os.getenv("POSITION_AMOUNT_PERCENTAGE_PER_TRADE", "10"))),
)
POSITION_MINIMUM_TRADE_AMOUNT = max(0.0, float(os.getenv("POSITION_MINIMUM_TRADE_AMOUNT", "10")))
POSITION_PLANNED_LEVERAGE = max(1, int(os.getenv("POSITION_PLANNED_LEVERAGE", "20")))
POSITION_PROFIT_PERCENTAGE = max(0.01, float(os.getenv("POSITION_PROFIT_PERCENTAGE", "0.36")))
POSITION_MARKET_AMOUNT_DIVIDER = max(1.0, float(os.getenv("POSITION_MARKET_AMOUNT_DIVIDER", "4")))
POSITION_LIMIT_LADDER = _parse_ladder_limits(
    os.getenv("POSITION_LIMIT_LADDER", "1.5:4,3:4,5:4")
)
POSITION_QUOTE_ASSET = os.getenv("POSITION_QUOTE_ASSET", "USDT").strip().upper() or "USDT"

# -- Exchange gateway --
EXCHANGE_EGRESS_IPS = _csv_env("EXCHANGE_EGRESS_IPS", "127.0.0.1")
EXCHANGE_IP_BALANCER_STRATEGY = os.getenv("EXCHANGE_IP_BALANCER_STRATEGY", "fixed").strip().lower()
if EXCHANGE_IP_BALANCER_STRATEGY not in {"fixed", "round-robin", "least-weight"}:
    EXCHANGE_IP_BALANCER_STRATEGY = "fixed"
EXCHANGE_WEIGHT_LIMIT = max(1, int(os.getenv("EXCHANGE_WEIGHT_LIMIT", "2000")))
EXCHANGE_RATE_LIMIT_PENALTY = max(1, int(os.getenv("EXCHANGE_RATE_LIMIT_PENALTY", "9999")))
EXCHANGE_MAX_ATTEMPTS = max(1, int(os.getenv("EXCHANGE_MAX_ATTEMPTS", "3")))
EXCHANGE_RATE_LIMIT_RETRY_SECONDS = max(0.0, float(os.getenv("EXCHANGE_RATE_LIMIT_RETRY_SECONDS", "2")))
EXCHANGE_HTTP_TIMEOUT = max(1.0, float(os.getenv("EXCHANGE_HTTP_TIMEOUT", "10")))
EXCHANGE_RECV_WINDOW = max(1000, int(os.getenv("EXCHANGE_RECV_WINDOW", "5000")))
# Binance answers 400 with these codes when the requested state is already set.
EXCHANGE_HTTP_ERRORS_TO_SKIP = {
    400: [-4046, -4059],
}
BINANCE_FUTURES_BASE_URL = os.getenv("BINANCE_FUTURES_BASE_URL", "https://fapi.binance.com").rstrip("/")
BINANCE_TESTNET = os.getenv("BINANCE_TESTNET", "false").lower() == "true"
if BINANCE_TESTNET:
    BINANCE_FUTURES_BASE_URL = "https://testnet.binancefuture.com"

# -- Repricing --
REPRICING_SCAN_SECONDS = max(10, int(os.getenv("REPRICING_SCAN_SECONDS", "60")))

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
TELEGRAM_ENABLED = os.getenv("TELEGRAM_ENABLED", "false").lower() == "true"

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "core",
    "exchanges",
    "jobs",
    "execution",
    "api",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"

if USE_SQLITE:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "ladder_engine"),
            "USER": os.getenv("POSTGRES_USER", "ladder_engine"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "ladder_engine"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        (
            "rest_framework.permissions.IsAuthenticatedOrReadOnly"
            if os.getenv("API_PUBLIC_READ_ENABLED", "false").lower() == "true"
            else "rest_framework.permissions.IsAuthenticated"
        ),
    ],
}

REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "").strip()
_default_redis_url = "redis://localhost:6379/0"
if REDIS_PASSWORD:
    _default_redis_url = f"redis://:{REDIS_PASSWORD}@localhost:6379/0"
REDIS_URL = os.getenv("REDIS_URL", _default_redis_url)

CELERY_BROKER_URL = REDIS_URL
CELERY_RESULT_BACKEND = REDIS_URL
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "celery")
CELERY_DLQ_REDIS_KEY = os.getenv("CELERY_DLQ_REDIS_KEY", "celery:dlq")
CELERY_DLQ_MAXLEN = max(100, int(os.getenv("CELERY_DLQ_MAXLEN", "2000")))
CELERY_NOTIFY_ON_FAILURE = os.getenv("CELERY_NOTIFY_ON_FAILURE", "true").lower() == "true"
CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS = max(30, int(os.getenv("CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS", "300")))

# Job entries are routed per call to JOB_POLLER_QUEUE_NAME; housekeeping stays on the default queue.
CELERY_TASK_ROUTES = {
    "jobs.tasks.poll_job_queue": {"queue": "scheduler"},
    "jobs.tasks.reap_job_leases": {"queue": "scheduler"},
    "execution.tasks.scan_positions_for_repricing": {"queue": "scheduler"},
}

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "poll-job-queue": {
        "task": "jobs.tasks.poll_job_queue",
        "schedule": JOB_POLLER_INTERVAL_SECONDS,
    },
    "reap-job-leases": {
        "task": "jobs.tasks.reap_job_leases",
        "schedule": crontab(),  # every minute
    },
    "scan-positions-for-repricing": {
        "task": "execution.tasks.scan_positions_for_repricing",
        "schedule": REPRICING_SCAN_SECONDS,
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "format": '{"timestamp":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}',
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "json"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO").upper()},
}
