"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Webhooks cover most new runs; this catches anything they missed
    'sync-auto-sync-athletes': {
        'task': 'tasks.sync_auto_sync_athletes',
        'schedule': crontab(minute=0, hour='*/6'),  # Every 6 hours
    },
}
