from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from ..models import Booking
from .errors import PermissionDeniedError


class Role(StrEnum):
    TUTOR = "tutor"
    ADMIN = "admin"
    GUEST = "guest"


@dataclass(frozen=True)
class CallerIdentity:
    """Who is acting; resolved by the authentication layer, never verified here."""

    user_id: Optional[int]
    role: Role
    email: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def guest(cls, email: Optional[str] = None, name: Optional[str] = None) -> "CallerIdentity":
        return cls(user_id=None, role=Role.GUEST, email=email, name=name)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, booking: Booking) -> bool:
        if self.user_id is not None and booking.user_id == self.user_id:
            return True
        if booking.user_id is None and self.email and booking.contact_email:
            return booking.contact_email.lower() == self.email.lower()
        return False

    def may_act_on(self, booking: Booking) -> bool:
        return self.is_admin or self.owns(booking)

    def require_admin(self, action: str) -> None:
        if not self.is_admin:
            raise PermissionDeniedError(f"only administrators may {action}")
