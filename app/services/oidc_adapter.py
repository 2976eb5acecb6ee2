"""
Storage adapter for the authorization server.

GrantStore is parameterized by a GrantKind: all kinds share the oidc_grants
table and every query is scoped to the store's kind. Clients and interactive
sessions have their own stores.

Expired rows are invisible to `find*` and removed by `cleanup_expired`.
Writes commit immediately; `mark_consumed` is a single guarded UPDATE, so of
two concurrent consumers exactly one succeeds.
"""

import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Any, Literal

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import utcnow
from app.core.logging import get_logger
from app.models.oidc import OidcClients, OidcGrants, OidcSessions
from app.services.oidc_grants import COLUMN_FIELDS, Grant, GrantKind, grant_adapter

logger = get_logger(__name__)


def _row_to_grant(row: OidcGrants) -> Grant:
    data: dict[str, Any] = dict(row.payload or {})
    for column in COLUMN_FIELDS:
        value = getattr(row, column)
        if value is not None:
            data[column] = value
    return grant_adapter.validate_python(data)


class GrantStore:
    def __init__(self, db: AsyncSession, kind: GrantKind) -> None:
        self.db = db
        self.kind = kind

    async def _live_row(self, *conditions: Any) -> OidcGrants | None:
        result = await self.db.execute(
            select(OidcGrants)
            .where(OidcGrants.kind == self.kind.value)  # type: ignore[arg-type]
            .where(*conditions)
        )
        row = result.scalars().first()
        if row is None:
            return None
        if row.expires_at is not None and row.expires_at <= utcnow():
            return None
        return row

    async def find(self, id: str) -> Grant | None:
        row = await self._live_row(OidcGrants.id == id)
        return _row_to_grant(row) if row else None

    async def find_by_secondary_key(
        self, key: Literal["user_code", "grant_id"], value: str
    ) -> Grant | None:
        column = OidcGrants.user_code if key == "user_code" else OidcGrants.grant_id
        row = await self._live_row(column == value)
        return _row_to_grant(row) if row else None

    async def find_by_user_code(self, user_code: str) -> Grant | None:
        return await self.find_by_secondary_key("user_code", user_code)

    async def upsert(self, grant: Grant, expires_in: int | None) -> None:
        """Insert or replace an artifact; `expires_in` seconds from now."""
        if grant.kind != self.kind.value:
            raise ValueError(f"{grant.kind} grant given to {self.kind.value} store")

        now = utcnow()
        expires_at = now + timedelta(seconds=expires_in) if expires_in else grant.expires_at
        row = await self.db.get(OidcGrants, grant.id)
        if row is None:
            row = OidcGrants(id=grant.id, kind=self.kind.value, issued_at=grant.issued_at or now)
            self.db.add(row)

        row.grant_id = grant.grant_id
        row.user_code = getattr(grant, "user_code", None)
        row.client_id = grant.client_id
        row.account_id = grant.account_id
        row.payload = grant.payload()
        row.expires_at = expires_at
        await self.db.commit()

    async def mark_consumed(self, id: str) -> bool:
        """
        Consume a single-use artifact.

        Returns:
            True for the one caller that consumed it, False if it was already
            consumed, expired or missing
        """
        now = utcnow()
        result = await self.db.execute(
            update(OidcGrants)
            .where(OidcGrants.id == id)  # type: ignore[arg-type]
            .where(OidcGrants.kind == self.kind.value)  # type: ignore[arg-type]
            .where(OidcGrants.consumed == False)  # type: ignore[arg-type]  # noqa: E712
            .where(
                (OidcGrants.expires_at.is_(None)) | (OidcGrants.expires_at > now)  # type: ignore[union-attr,operator]
            )
            .values(consumed=True, consumed_at=now)
        )
        await self.db.commit()
        consumed = (result.rowcount or 0) == 1  # type: ignore[attr-defined]
        if consumed:
            logger.info("grant_consumed", kind=self.kind.value)
        return consumed

    async def destroy(self, id: str) -> None:
        await self.db.execute(
            delete(OidcGrants)
            .where(OidcGrants.id == id)  # type: ignore[arg-type]
            .where(OidcGrants.kind == self.kind.value)  # type: ignore[arg-type]
        )
        await self.db.commit()

    async def revoke_by_grant_id(self, grant_id: str) -> int:
        result = await self.db.execute(
            delete(OidcGrants)
            .where(OidcGrants.grant_id == grant_id)  # type: ignore[arg-type]
            .where(OidcGrants.kind == self.kind.value)  # type: ignore[arg-type]
        )
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def cleanup_expired(self) -> int:
        result = await self.db.execute(
            delete(OidcGrants)
            .where(OidcGrants.kind == self.kind.value)  # type: ignore[arg-type]
            .where(OidcGrants.expires_at <= utcnow())  # type: ignore[arg-type,operator]
        )
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]


async def revoke_grant(db: AsyncSession, grant_id: str) -> int:
    """Delete every artifact issued from one authorization, across all kinds."""
    total = 0
    for kind in GrantKind:
        total += await GrantStore(db, kind).revoke_by_grant_id(grant_id)
    if total:
        logger.info("grant_revoked", grant_id=grant_id, artifacts=total)
    return total


def hash_client_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


class ClientStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find(self, client_id: str) -> OidcClients | None:
        result = await self.db.execute(
            select(OidcClients).where(OidcClients.client_id == client_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_clients(self) -> list[OidcClients]:
        result = await self.db.execute(select(OidcClients).order_by(OidcClients.id))  # type: ignore[arg-type]
        return list(result.scalars().all())

    async def create(self, confidential: bool, **metadata: Any) -> tuple[OidcClients, str | None]:
        """
        Register a client.

        Returns:
            (client, secret): the plaintext secret is only available here
        """
        secret = secrets.token_urlsafe(32) if confidential else None
        client = OidcClients(
            client_id=secrets.token_urlsafe(16),
            client_secret_hash=hash_client_secret(secret) if secret else None,
            **metadata,
        )
        if not confidential:
            client.token_endpoint_auth_method = "none"
        self.db.add(client)
        await self.db.commit()
        await self.db.refresh(client)
        logger.info("oidc_client_registered", client_id=client.client_id, public=not confidential)
        return client, secret

    async def update(self, client: OidcClients, **changes: Any) -> OidcClients:
        for key, value in changes.items():
            setattr(client, key, value)
        client.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(client)
        return client

    async def delete(self, client: OidcClients) -> None:
        await self.db.delete(client)
        await self.db.commit()
        logger.info("oidc_client_deleted", client_id=client.client_id)

    @staticmethod
    def check_secret(client: OidcClients, secret: str | None) -> bool:
        if client.client_secret_hash is None or not secret:
            return False
        return hmac.compare_digest(client.client_secret_hash, hash_client_secret(secret))


class InteractionStore:
    """Interactive authorization requests waiting for the user to log in or consent."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find(self, uid: str) -> OidcSessions | None:
        row = await self.db.get(OidcSessions, uid)
        if row is None or row.expires_at <= utcnow():
            return None
        return row

    async def upsert(
        self,
        uid: str,
        payload: dict[str, Any],
        expires_in: int,
        account_id: str | None = None,
    ) -> None:
        row = await self.db.get(OidcSessions, uid)
        expires_at = utcnow() + timedelta(seconds=expires_in)
        if row is None:
            row = OidcSessions(id=uid, payload=payload, expires_at=expires_at)
            self.db.add(row)
        row.payload = payload
        row.expires_at = expires_at
        row.account_id = account_id
        await self.db.commit()

    async def destroy(self, uid: str) -> None:
        await self.db.execute(delete(OidcSessions).where(OidcSessions.id == uid))  # type: ignore[arg-type]
        await self.db.commit()

    async def cleanup_expired(self) -> int:
        result = await self.db.execute(
            delete(OidcSessions).where(OidcSessions.expires_at <= utcnow())  # type: ignore[arg-type]
        )
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]


async def cleanup_all_expired(db: AsyncSession) -> int:
    """Remove expired artifacts of every kind and expired interactions."""
    removed = 0
    for kind in GrantKind:
        removed += await GrantStore(db, kind).cleanup_expired()
    removed += await InteractionStore(db).cleanup_expired()
    logger.info("oidc_cleanup_completed", removed=removed)
    return removed
