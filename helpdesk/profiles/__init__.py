"""User directory: profiles and the per-request session context."""

from .models import Profile, SessionContext
from .repository import ProfileRepository

__all__ = ["Profile", "ProfileRepository", "SessionContext"]
