from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol


class NotificationTemplate(StrEnum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    MODIFIED = "modified"
    CLOSED = "closed"


@dataclass(frozen=True)
class NotificationRequest:
    recipient: str
    template: NotificationTemplate
    details: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def send(self, request: NotificationRequest) -> None: ...
