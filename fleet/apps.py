import logging
import os

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger(__name__)


class FleetConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'fleet'

    def ready(self):
        # only run reconciliation inside the web process when asked to;
        # otherwise `manage.py runreconciler` does it
        if not getattr(settings, "RECONCILER_IN_APP", False):
            return

        # Avoid starting twice under the runserver autoreloader: the child process sets RUN_MAIN
        if os.environ.get("RUN_MAIN") not in (None, "true", "1"):
            logger.debug("Skipping scheduler start due to RUN_MAIN=%s", os.environ.get("RUN_MAIN"))
            return

        try:
            from .scheduler import start_scheduler
            start_scheduler()
        except Exception:
            logger.exception("Failed to start scheduler in AppConfig.ready()")
