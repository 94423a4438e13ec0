"""Session lookup used to identify the caller of an API request."""

import asyncio
import secrets
from abc import ABC, abstractmethod
from typing import Dict, Optional

from fastapi import Request
from structlog import get_logger

from ..domain.models import Principal

logger = get_logger()


class SessionResolver(ABC):
    """Resolves an opaque session token to a verified user."""

    @abstractmethod
    async def resolve(self, token: str) -> Optional[Principal]:
        pass


class InMemorySessionResolver(SessionResolver):
    """Token table kept in process memory."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Principal] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, user_id: str) -> str:
        """Issue a new token for ``user_id``."""
        token = secrets.token_urlsafe(32)
        async with self._lock:
            self._sessions[token] = Principal(user_id=user_id)
        logger.info("session_created", user_id=user_id)
        return token

    async def revoke(self, token: str) -> None:
        async with self._lock:
            self._sessions.pop(token, None)

    async def resolve(self, token: str) -> Optional[Principal]:
        async with self._lock:
            return self._sessions.get(token)


def extract_token(request: Request, cookie_name: str) -> Optional[str]:
    """Read the session token from the cookie, falling back to a bearer header."""
    token = request.cookies.get(cookie_name)
    if token:
        return token
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def resolve_principal(
    request: Request,
    resolver: SessionResolver,
    cookie_name: str,
) -> Optional[Principal]:
    """Return the caller or None; callers decide how to reject anonymous requests."""
    token = extract_token(request, cookie_name)
    if token is None:
        return None
    principal = await resolver.resolve(token)
    if principal is None:
        logger.warning("session_not_found", path=request.url.path)
    return principal
