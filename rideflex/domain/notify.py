"""Fire-and-forget hand-off to the notification collaborator."""

import logging

logger = logging.getLogger(__name__)


async def notify(notifier, event: str, **payload) -> None:
    """Send *event* if a notifier is configured.  Delivery problems are
    logged and never reach the caller's operation."""
    if notifier is None:
        return
    try:
        await notifier.send(event, payload)
    except Exception:
        logger.exception("Notification %s failed", event)
