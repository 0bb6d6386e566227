from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class Profile:
    """Directory entry for an authenticated user."""

    id: str
    email: str | None
    nickname: str | None
    phone: str | None
    avatar_url: str | None
    is_support: bool
    is_admin: bool
    created_at: datetime
    updated_at: datetime

    @property
    def display_name(self) -> str:
        return self.nickname or self.email or "Support agent"


@dataclass(frozen=True, slots=True)
class SessionContext:
    """The acting user, resolved once per request and passed to every operation."""

    user_id: str
    email: str | None = None
    nickname: str | None = None
    is_support: bool = False
    is_admin: bool = False

    @property
    def is_staff(self) -> bool:
        return self.is_support or self.is_admin

    @classmethod
    def from_profile(cls, profile: Profile) -> "SessionContext":
        return cls(
            user_id=profile.id,
            email=profile.email,
            nickname=profile.nickname,
            is_support=profile.is_support,
            is_admin=profile.is_admin,
        )
