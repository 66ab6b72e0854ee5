"""Notification collaborator.

Outbound email / SMS delivery lives outside this service; the API process
only hands events over.  ``LoggingNotifier`` records them in the log.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def send(self, event: str, payload: dict) -> None:
        ...


class LoggingNotifier(Notifier):
    async def send(self, event: str, payload: dict) -> None:
        logger.info("notify %s %s", event, payload)
