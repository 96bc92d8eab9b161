"""Celery app for the EIS submission pipeline."""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "eis_project.settings")

app = Celery("eis_project")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
