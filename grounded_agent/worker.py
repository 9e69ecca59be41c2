# This module initializes and configures the Celery application instance.
# Date: 2026-10-18
# Version: 0.2.0

from celery import Celery
from grounded_agent.core.config import get_settings

# Get the application settings
settings = get_settings()

# Initialize the Celery application.
# Poll requests are processed here when POLL_BACKEND is 'celery'.
celery_app = Celery(
    'grounded_agent_tasks',
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=['grounded_agent.tasks']
)

# Configure Celery settings
celery_app.conf.update(
    task_track_started=True,
    result_expires=3600,  # Expire results after 1 hour
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,
)
