"""
Base settings for the EIS submission pipeline.
Use: DJANGO_SETTINGS_MODULE=eis_project.settings

- SQLite by default (DB_PATH); see settings_production for PostgreSQL
- Pipeline tuning (EIS_PIPELINE) and authority endpoint from env
- Console logging, plain or JSON (LOG_FORMAT=json)
"""

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("SECRET_KEY", "dev-insecure-eis-key")
DEBUG = os.environ.get("DEBUG", "false").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = os.environ.get("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "invoicing",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    return int(raw) if raw.strip() else default


# Tax authority (MRA EIS) endpoint
EIS_ENV = os.environ.get("EIS_ENV", "DEV")
EIS_AUTHORITY_BASE_URL = os.environ.get("EIS_AUTHORITY_BASE_URL", "https://eis-api-test.mra.mw")
EIS_AUTHORITY_TOKEN = os.environ.get("EIS_AUTHORITY_TOKEN", "")
EIS_SUBMIT_PATH = os.environ.get("EIS_SUBMIT_PATH", "/api/v1/sales/submit-sales-transaction")
EIS_LOOKUP_PATH = os.environ.get("EIS_LOOKUP_PATH", "/api/v1/sales/transactions/{invoice_number}")

# Submission pipeline. Read through invoicing.services.pipeline_config.PipelineConfig.
EIS_PIPELINE = {
    "vat_rate": os.environ.get("EIS_VAT_RATE", "0.175"),
    "batch_size": _env_int("EIS_BATCH_SIZE", 25),
    "tick_interval_ms": _env_int("EIS_TICK_INTERVAL_MS", 30_000),
    "max_attempts": _env_int("EIS_MAX_ATTEMPTS", 5),
    "backoff_base_ms": _env_int("EIS_BACKOFF_BASE_MS", 2_000),
    "backoff_cap_ms": _env_int("EIS_BACKOFF_CAP_MS", 300_000),
    "concurrency": _env_int("EIS_WORKER_CONCURRENCY", 4),
    "authority_timeout_ms": _env_int("EIS_AUTHORITY_TIMEOUT_MS", 20_000),
    "lock_ttl_ms": _env_int("EIS_LOCK_TTL_MS", 90_000),
}

# Celery (alternative to the run_submission_worker command)
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_TASK_ALWAYS_EAGER = os.environ.get("CELERY_TASK_ALWAYS_EAGER", "false").lower() in ("1", "true", "yes")
CELERY_BEAT_SCHEDULE = {
    "invoicing-submission-tick": {
        "task": "invoicing.submission_tick_task",
        "schedule": timedelta(milliseconds=EIS_PIPELINE["tick_interval_ms"]),
    },
}

LOG_FORMAT = os.environ.get("LOG_FORMAT", "simple")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
        "json": {
            "()": "invoicing.logging_formatter.JSONFormatter",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json" if LOG_FORMAT == "json" else "simple",
        },
    },
    "loggers": {
        "invoicing": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
