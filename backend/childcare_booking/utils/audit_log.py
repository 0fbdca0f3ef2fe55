from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Sequence

from .request_id import get_request_id

AuditAction = Literal[
    "booking.created",
    "booking.modified",
    "booking.cancelled",
    "booking.deleted",
    "booking.confirmed",
    "booking.closed",
    "booking.attendance",
    "slot.created",
    "slot.updated",
    "slot.deleted",
]
AuditInitiator = Literal["user", "guest", "admin", "system"]


def _build_logger() -> logging.Logger:
    logger = logging.getLogger("audit")
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    # One JSON object per line, kept out of the application log
    logger.propagate = False
    return logger


_audit_logger = _build_logger()


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass(frozen=True)
class AuditRecord:
    """One state change on a booking or slot, as written to the audit stream."""

    action: AuditAction
    initiator: AuditInitiator
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    request_id: Optional[str] = field(default_factory=get_request_id)
    booking_id: Optional[int] = None
    kind: Optional[str] = None
    slot_ids: Optional[list[int]] = None
    user_id: Optional[int] = None
    units: Optional[int] = None
    status_from: Optional[str] = None
    status_to: Optional[str] = None
    message: Optional[str] = None

    def to_json(self, extra: Optional[dict[str, Any]] = None) -> str:
        payload = {"level": "info", **asdict(self), **(extra or {})}
        return json.dumps({k: v for k, v in payload.items() if v is not None}, ensure_ascii=True, default=str)


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    booking_id: Optional[int] = None,
    kind: Any = None,
    slot_ids: Optional[Sequence[int]] = None,
    user_id: Optional[int] = None,
    units: Optional[int] = None,
    status_from: Any = None,
    status_to: Any = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Write one audit line. Raises RuntimeError if the line cannot be written."""
    record = AuditRecord(
        action=action,
        initiator=initiator,
        booking_id=booking_id,
        kind=_plain(kind),
        slot_ids=list(slot_ids) if slot_ids is not None else None,
        user_id=user_id,
        units=units,
        status_from=_plain(status_from),
        status_to=_plain(status_to),
        message=message,
    )
    try:
        _audit_logger.info(record.to_json(extra))
    except Exception as exc:
        raise RuntimeError("failed to emit audit log") from exc
