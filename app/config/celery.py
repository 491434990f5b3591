"""
Celery application for the escrow service.

Workers auto-release completed holds, retry pending transfers and refunds
with their stored idempotency keys, and re-apply failed webhook events.
Redis is both broker and result backend; beat reads its schedule from
the django-celery-beat tables.
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# Every CELERY_* Django setting configures the app
app.config_from_object("django.conf:settings", namespace="CELERY")

# Registers escrow.tasks, which also imports the escrow.workers tasks
app.autodiscover_tasks()
