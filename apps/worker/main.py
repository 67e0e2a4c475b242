"""
Worker main entry point for background processing.
"""
from apps.core.logging import configure_logging
from apps.core.monitoring import init_sentry
from apps.worker.tasks import celery_app

configure_logging()
init_sentry(component="worker")

if __name__ == '__main__':
    celery_app.start()
