from __future__ import annotations

import json
import logging

from ..domain.notifications import NotificationRequest

_notification_logger = logging.getLogger("notifications")


class LoggingNotifier:
    """Records notification requests; actual delivery is handled outside this service."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _notification_logger

    async def send(self, request: NotificationRequest) -> None:
        self._logger.info(
            json.dumps(
                {
                    "recipient": request.recipient,
                    "template": request.template.value,
                    "details": request.details,
                },
                ensure_ascii=True,
                default=str,
            )
        )
