"""
Production environment settings.
Use: DJANGO_SETTINGS_MODULE=eis_project.settings_production

- Production DB (PostgreSQL via DATABASE_URL; SQLite supported)
- MRA EIS production API
- Log files with retention for the worker and its errors
- DEBUG=False, SECRET_KEY from env
"""

import os
from pathlib import Path

import dj_database_url

from .settings import *  # noqa: F401, F403

BASE_DIR = Path(__file__).resolve().parent.parent

# Production: never debug
DEBUG = False
SECRET_KEY = os.environ.get("SECRET_KEY")
if not SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable must be set in production")
ALLOWED_HOSTS = os.environ.get("ALLOWED_HOSTS", "").split(",")
if not ALLOWED_HOSTS or ALLOWED_HOSTS == [""]:
    raise ValueError("ALLOWED_HOSTS environment variable must be set in production")

# Database: prefer PostgreSQL if DATABASE_URL set
if os.environ.get("DATABASE_URL"):
    DATABASES = {"default": dj_database_url.config(conn_max_age=600)}
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("DB_PATH", str(BASE_DIR / "db_production.sqlite3")),
        }
    }

# MRA EIS production API
EIS_ENV = "PROD"
EIS_AUTHORITY_BASE_URL = os.environ.get("EIS_AUTHORITY_BASE_URL")
if not EIS_AUTHORITY_BASE_URL:
    raise ValueError("EIS_AUTHORITY_BASE_URL environment variable must be set in production")

# Log retention
LOGS_DIR = Path(os.environ.get("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

LOGGING["handlers"]["worker_file"] = {
    "level": "INFO",
    "class": "logging.handlers.RotatingFileHandler",
    "filename": LOGS_DIR / "submission_worker.log",
    "maxBytes": 10 * 1024 * 1024,  # 10 MB
    "backupCount": 30,
    "formatter": "json",
}
LOGGING["handlers"]["worker_error_file"] = {
    "level": "ERROR",
    "class": "logging.handlers.RotatingFileHandler",
    "filename": LOGS_DIR / "submission_worker_error.log",
    "maxBytes": 5 * 1024 * 1024,
    "backupCount": 90,  # 90 days for errors
    "formatter": "simple",
}
LOGGING["loggers"]["invoicing"]["handlers"] = ["console", "worker_file", "worker_error_file"]
