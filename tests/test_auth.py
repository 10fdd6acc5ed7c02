"""Token resolution shared by the REST dependencies and the live feed."""

import uuid

import pytest

from discipline.auth.dependencies import resolve_active_user
from discipline.auth.models import User
from discipline.auth.security import create_access_token

from conftest import auth_headers


def _token(user: User) -> str:
    return auth_headers(user)["Authorization"].split(" ", 1)[1]


@pytest.mark.asyncio
async def test_active_user_is_resolved(db_session, admin) -> None:
    current_user = await resolve_active_user(db_session, _token(admin))

    assert current_user is not None
    assert current_user.id == admin.id
    assert current_user.has_role("ADMIN")


@pytest.mark.asyncio
async def test_inactive_user_with_valid_token_is_rejected(db_session, admin) -> None:
    token = _token(admin)
    admin.status = "INACTIVE"
    await db_session.commit()

    assert await resolve_active_user(db_session, token) is None


@pytest.mark.asyncio
async def test_unknown_user_and_bad_token_are_rejected(db_session, tenant_id) -> None:
    orphan = create_access_token(
        subject={"user_id": str(uuid.uuid4()), "tenant_id": str(tenant_id), "role": "ADMIN"}
    )

    assert await resolve_active_user(db_session, orphan) is None
    assert await resolve_active_user(db_session, "not-a-token") is None


@pytest.mark.asyncio
async def test_inactive_user_gets_401(client, db_session, admin) -> None:
    headers = auth_headers(admin)
    admin.status = "INACTIVE"
    await db_session.commit()

    response = await client.get("/api/v1/detentions/sessions", headers=headers)

    assert response.status_code == 401
