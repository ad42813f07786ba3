from .settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}

CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = False
CELERY_NOTIFY_ON_FAILURE = False
REDIS_URL = "redis://localhost:6399/15"

JOB_POLLER_QUEUE_NAME = "test-host"
JOB_POLLER_MAX_PARALLEL = 3
EXCHANGE_EGRESS_IPS = ["127.0.0.1"]
EXCHANGE_IP_BALANCER_STRATEGY = "fixed"
EXCHANGE_RATE_LIMIT_RETRY_SECONDS = 0.0
TELEGRAM_ENABLED = False

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "root": {"handlers": [], "level": "CRITICAL"},
}
