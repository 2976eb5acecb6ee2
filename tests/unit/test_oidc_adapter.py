"""
Tests for the authorization-server storage adapter.

Covers typed round trips through the shared grants table, kind scoping,
single-use consumption, grant-wide revocation and expiry cleanup.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import utcnow
from app.services.oidc_adapter import (
    ClientStore,
    GrantStore,
    InteractionStore,
    cleanup_all_expired,
    revoke_grant,
)
from app.services.oidc_grants import (
    AccessTokenGrant,
    AuthorizationCodeGrant,
    DeviceCodeGrant,
    DeviceCodeStatus,
    GrantKind,
    RefreshTokenGrant,
    grant_adapter,
)


def _code(id: str = "code-1", grant_id: str = "grant-1") -> AuthorizationCodeGrant:
    return AuthorizationCodeGrant(
        id=id,
        grant_id=grant_id,
        client_id="client-1",
        account_id="1",
        scope="openid email",
        redirect_uri="https://app.example.com/cb",
        code_challenge="challenge",
        code_challenge_method="S256",
        nonce="n-1",
    )


@pytest.mark.unit
class TestGrantModels:
    def test_discriminated_union(self) -> None:
        grant = grant_adapter.validate_python(
            {"kind": "DeviceCode", "id": "d", "user_code": "BCDF-GHJK"}
        )
        assert isinstance(grant, DeviceCodeGrant)
        assert grant.status == DeviceCodeStatus.PENDING

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            grant_adapter.validate_python({"kind": "Session", "id": "x"})

    def test_payload_excludes_column_fields(self) -> None:
        payload = _code().payload()
        assert "id" not in payload
        assert "client_id" not in payload
        assert payload["redirect_uri"] == "https://app.example.com/cb"
        assert "kind" not in payload
        assert _code().scopes == {"openid", "email"}


@pytest.mark.unit
class TestGrantStore:
    async def test_upsert_and_find_round_trip(self, db_session: AsyncSession) -> None:
        store = GrantStore(db_session, GrantKind.AUTHORIZATION_CODE)
        await store.upsert(_code(), expires_in=600)

        found = await store.find("code-1")

        assert isinstance(found, AuthorizationCodeGrant)
        assert found.redirect_uri == "https://app.example.com/cb"
        assert found.code_challenge == "challenge"
        assert found.nonce == "n-1"
        assert found.account_id == "1"
        assert found.consumed is False
        assert found.expires_at is not None

    async def test_lookups_are_scoped_to_kind(self, db_session: AsyncSession) -> None:
        await GrantStore(db_session, GrantKind.AUTHORIZATION_CODE).upsert(_code(), 600)
        assert await GrantStore(db_session, GrantKind.REFRESH_TOKEN).find("code-1") is None

    async def test_wrong_kind_rejected(self, db_session: AsyncSession) -> None:
        with pytest.raises(ValueError):
            await GrantStore(db_session, GrantKind.ACCESS_TOKEN).upsert(_code(), 600)

    async def test_expired_artifacts_are_invisible(self, db_session: AsyncSession) -> None:
        store = GrantStore(db_session, GrantKind.AUTHORIZATION_CODE)
        grant = _code()
        grant.expires_at = utcnow() - timedelta(seconds=1)
        await store.upsert(grant, expires_in=None)

        assert await store.find("code-1") is None
        assert await store.mark_consumed("code-1") is False

    async def test_mark_consumed_succeeds_once(self, db_session: AsyncSession) -> None:
        store = GrantStore(db_session, GrantKind.AUTHORIZATION_CODE)
        await store.upsert(_code(), 600)

        assert await store.mark_consumed("code-1") is True
        assert await store.mark_consumed("code-1") is False

        db_session.expire_all()
        found = await store.find("code-1")
        assert found is not None
        assert found.consumed is True
        assert found.consumed_at is not None

    async def test_find_by_user_code(self, db_session: AsyncSession) -> None:
        store = GrantStore(db_session, GrantKind.DEVICE_CODE)
        await store.upsert(
            DeviceCodeGrant(id="device-1", client_id="client-1", user_code="BCDF-GHJK"), 600
        )

        found = await store.find_by_user_code("BCDF-GHJK")

        assert isinstance(found, DeviceCodeGrant)
        assert found.id == "device-1"
        assert await store.find_by_user_code("ZZZZ-ZZZZ") is None

    async def test_upsert_replaces_payload(self, db_session: AsyncSession) -> None:
        store = GrantStore(db_session, GrantKind.DEVICE_CODE)
        await store.upsert(
            DeviceCodeGrant(id="device-1", client_id="client-1", user_code="BCDF-GHJK"), 600
        )
        grant = await store.find("device-1")
        assert isinstance(grant, DeviceCodeGrant)
        original_expiry = grant.expires_at

        grant.status = DeviceCodeStatus.APPROVED
        grant.account_id = "42"
        await store.upsert(grant, expires_in=None)

        updated = await store.find("device-1")
        assert isinstance(updated, DeviceCodeGrant)
        assert updated.status == DeviceCodeStatus.APPROVED
        assert updated.account_id == "42"
        assert updated.expires_at == original_expiry

    async def test_revoke_grant_spans_all_kinds(self, db_session: AsyncSession) -> None:
        await GrantStore(db_session, GrantKind.AUTHORIZATION_CODE).upsert(_code(), 600)
        await GrantStore(db_session, GrantKind.ACCESS_TOKEN).upsert(
            AccessTokenGrant(id="jti-1", grant_id="grant-1", client_id="client-1"), 600
        )
        await GrantStore(db_session, GrantKind.REFRESH_TOKEN).upsert(
            RefreshTokenGrant(id="rt-1", grant_id="grant-1", client_id="client-1"), 600
        )
        await GrantStore(db_session, GrantKind.REFRESH_TOKEN).upsert(
            RefreshTokenGrant(id="rt-other", grant_id="grant-2", client_id="client-1"), 600
        )

        assert await revoke_grant(db_session, "grant-1") == 3

        assert await GrantStore(db_session, GrantKind.ACCESS_TOKEN).find("jti-1") is None
        assert await GrantStore(db_session, GrantKind.REFRESH_TOKEN).find("rt-1") is None
        assert await GrantStore(db_session, GrantKind.REFRESH_TOKEN).find("rt-other") is not None

    async def test_cleanup_removes_only_expired(self, db_session: AsyncSession) -> None:
        store = GrantStore(db_session, GrantKind.ACCESS_TOKEN)
        stale = AccessTokenGrant(id="old", client_id="c", expires_at=utcnow() - timedelta(hours=1))
        await store.upsert(stale, expires_in=None)
        await store.upsert(AccessTokenGrant(id="new", client_id="c"), expires_in=600)
        await InteractionStore(db_session).upsert("uid-old", {"client_id": "c"}, expires_in=600)
        interaction = await InteractionStore(db_session).find("uid-old")
        assert interaction is not None
        interaction.expires_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()

        assert await cleanup_all_expired(db_session) == 2
        assert await store.find("new") is not None


@pytest.mark.unit
class TestClientStore:
    async def test_confidential_client_gets_hashed_secret(self, db_session: AsyncSession) -> None:
        store = ClientStore(db_session)
        client, secret = await store.create(
            confidential=True, client_name="Web", redirect_uris=["https://a.example.com/cb"]
        )

        assert secret is not None
        assert client.client_secret_hash != secret
        assert client.is_public is False
        assert ClientStore.check_secret(client, secret)
        assert not ClientStore.check_secret(client, "wrong")
        assert not ClientStore.check_secret(client, None)

    async def test_public_client(self, db_session: AsyncSession) -> None:
        client, secret = await ClientStore(db_session).create(confidential=False)

        assert secret is None
        assert client.is_public is True
        assert client.token_endpoint_auth_method == "none"

    async def test_update_and_delete(self, db_session: AsyncSession) -> None:
        store = ClientStore(db_session)
        client, _ = await store.create(confidential=True, client_name="Before")

        updated = await store.update(client, client_name="After", is_active=False)
        assert updated.client_name == "After"
        assert updated.is_active is False

        await store.delete(updated)
        assert await store.find(client.client_id) is None
