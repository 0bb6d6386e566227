"""Bearer token authentication and role guards.

Tokens are issued by the external identity provider; this service only
verifies them and resolves the caller into a :class:`SessionContext` backed
by the profile directory.
"""

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from helpdesk.core.config import Settings, get_settings
from helpdesk.profiles.models import SessionContext
from helpdesk.tickets.errors import TicketStorageError

from .services import ProfileRepositoryDep

bearer_scheme = HTTPBearer(auto_error=False)


class InvalidTokenError(ValueError):
    """Raised when a bearer token cannot be trusted."""


class TokenVerifier:
    """Validate identity provider JWTs signed with a shared secret."""

    def __init__(self, *, secret: str, algorithm: str = "HS256", audience: str | None = None) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVerifier":
        return cls(secret=settings.jwt_secret, algorithm=settings.jwt_algorithm, audience=settings.jwt_audience)

    def verify(self, token: str) -> dict[str, Any]:
        options = {"verify_aud": self._audience is not None}
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                options=options,
            )
        except JWTError as exc:
            raise InvalidTokenError(str(exc)) from exc
        if not claims.get("sub"):
            raise InvalidTokenError("Token has no subject")
        return claims


def get_token_verifier(request: Request) -> TokenVerifier:
    verifier = getattr(request.app.state, "token_verifier", None)
    if verifier is None:
        verifier = TokenVerifier.from_settings(get_settings())
        request.app.state.token_verifier = verifier
    return verifier


async def get_session_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
    profiles: ProfileRepositoryDep,
) -> SessionContext:
    """Resolve the caller once per request; the result is cached on ``request.state``."""

    cached = getattr(request.state, "session", None)
    if isinstance(cached, SessionContext):
        return cached

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authentication credentials")
    try:
        claims = verifier.verify(credentials.credentials)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials") from exc

    try:
        profile = await profiles.upsert_profile(str(claims["sub"]), email=claims.get("email"))
    except TicketStorageError as exc:
        raise HTTPException(status_code=503, detail="Profile directory is not available") from exc

    session = SessionContext.from_profile(profile)
    request.state.session = session
    return session


CurrentSession = Annotated[SessionContext, Depends(get_session_context)]


def role_required(check: Callable[[SessionContext], bool], detail: str) -> Callable[..., Any]:
    """Dependency factory ensuring the current session passes ``check``."""

    async def dependency(session: CurrentSession) -> SessionContext:
        if not check(session):
            raise HTTPException(status_code=403, detail=detail)
        return session

    return dependency


staff_required = role_required(lambda session: session.is_staff, "Support staff only")
admin_required = role_required(lambda session: session.is_admin, "Administrators only")

StaffSession = Annotated[SessionContext, Depends(staff_required)]
AdminSession = Annotated[SessionContext, Depends(admin_required)]
