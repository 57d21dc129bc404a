"""
Celery worker entry point.

This imports the Celery app and tasks from the API module.
"""
import os
import sys

# The API package lives beside the worker in the repo and at /api in the image
API_DIR = os.environ.get("API_DIR") or os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "api")
sys.path.insert(0, API_DIR)

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

# This makes Celery discover tasks
celery_app.autodiscover_tasks(['tasks'])


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
