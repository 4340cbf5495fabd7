# fleet/events.py
import logging
from typing import Any, Dict, Optional

from .models import ResourceEvent

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def record_event(
    message: str,
    *,
    category: str,
    resource=None,
    owner_id: Optional[int] = None,
    level: str = "info",
    from_status: str = "",
    to_status: str = "",
    outcome: str = "",
    error_kind: str = "",
    meta: Optional[Dict[str, Any]] = None,
) -> ResourceEvent:
    """Persist a user-visible event and mirror it to the module logger."""
    kind = resource.kind if resource is not None else ""
    rid = resource.pk if resource is not None else None
    if resource is not None and owner_id is None:
        owner_id = resource.owner_id

    logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s %s:%s %s", category, kind or "-", rid or "-", message)
    return ResourceEvent.objects.create(
        owner_id=owner_id,
        resource_kind=kind,
        resource_id=rid,
        level=level,
        category=category,
        message=message,
        from_status=from_status,
        to_status=to_status,
        outcome=outcome,
        error_kind=error_kind,
        meta=meta or {},
    )
