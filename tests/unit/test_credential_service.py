import pytest
from fastapi import HTTPException

from calendar_metrics.services.credential_service import (
    CredentialError,
    CredentialService,
    resolve_credential,
    session_user_id,
)


@pytest.mark.asyncio
async def test_resolves_stored_access_token(fake_redis):
    await fake_redis.set_with_ttl("calendar:access_token:user-123", "ya29.token")
    service = CredentialService(fake_redis, key_prefix="calendar:access_token")

    assert await service.resolve_credential("user-123") == "ya29.token"


@pytest.mark.asyncio
async def test_missing_token_raises_credential_error(fake_redis):
    service = CredentialService(fake_redis, key_prefix="calendar:access_token")

    with pytest.raises(CredentialError) as exc_info:
        await service.resolve_credential("user-456")

    assert exc_info.value.user_id == "user-456"


@pytest.mark.asyncio
async def test_dependency_maps_missing_token_to_401(fake_redis):
    service = CredentialService(fake_redis, key_prefix="calendar:access_token")

    with pytest.raises(HTTPException) as exc_info:
        await resolve_credential(user_id="user-456", service=service)

    assert exc_info.value.status_code == 401


def test_session_without_subject_is_rejected():
    with pytest.raises(HTTPException) as exc_info:
        session_user_id(claims={"aud": "authenticated"})

    assert exc_info.value.status_code == 401
    assert session_user_id(claims={"sub": "user-123"}) == "user-123"
