"""
Credential lookup for the calendar event source.

The OAuth collaborator stores each user's current Google access token in
Redis under ``{CREDENTIAL_KEY_PREFIX}:{user_id}``; this module only reads it.
Refresh and encryption at rest belong to that collaborator.
"""

from typing import Protocol

from fastapi import Depends, HTTPException, status

from calendar_metrics.auth.verify import auth_dependency
from calendar_metrics.config import settings
from calendar_metrics.infrastructure.observability.logging import get_logger
from calendar_metrics.services.redis_client import fast_redis

logger = get_logger(__name__)


class CredentialError(Exception):
    """No usable calendar credential for the session."""

    def __init__(self, message: str, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...


class CredentialService:
    def __init__(self, store: KeyValueStore, key_prefix: str = settings.CREDENTIAL_KEY_PREFIX):
        self.store = store
        self.key_prefix = key_prefix

    def _credential_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    async def resolve_credential(self, user_id: str) -> str:
        """
        Return the calendar access token for ``user_id``.

        Raises:
            CredentialError: If no token is stored
        """
        token = await self.store.get(self._credential_key(user_id))
        if not token:
            logger.info("No calendar credential stored", user_id=user_id)
            raise CredentialError("Calendar is not connected for this user", user_id=user_id)
        return token


credential_service = CredentialService(fast_redis)


def get_credential_service() -> CredentialService:
    return credential_service


def session_user_id(claims: dict = Depends(auth_dependency)) -> str:
    """Resolve the session context to a user id."""
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


async def resolve_credential(
    user_id: str = Depends(session_user_id),
    service: CredentialService = Depends(get_credential_service),
) -> str:
    """FastAPI dependency: session -> calendar access token, or 401."""
    try:
        return await service.resolve_credential(user_id)
    except CredentialError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e
