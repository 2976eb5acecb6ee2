"""
Session store: lifecycle of server-side sessions.

States: created -> active -> expired | revoked (terminal). Refresh keeps a
session active and swaps the wrapped token pair.

A session wraps an access/refresh token pair behind an opaque random token.
Clients only ever see the opaque token; it is stored as a SHA-256 hash.

Concurrency: refresh may run concurrently for one session (request path and
scheduler). The refresh write only applies while the row still holds the
refresh token the caller loaded, and expiry columns never decrease. A racing
refresh costs at most one extra provider call; the loser returns the winner's
row. No lock is taken.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Request
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import TokenSource, settings
from app.core.database import utcnow
from app.core.errors import AuthError, ExpiredCredential, InvalidCredential
from app.core.logging import get_logger
from app.core.permissions import get_identity_permission_codes, get_identity_role_codes
from app.core.security import (
    create_access_token,
    create_refresh_token,
    create_session_token,
    hash_token,
)
from app.models.user import Users
from app.models.user_session import UserSessions
from app.services.credentials import CredentialVerifier, get_credential_verifier
from app.services.idp_client import IdpClient, TokenSet, get_idp_client
from app.services.identity_store import get_identity
from app.utils.device import device_fingerprint, parse_user_agent

logger = get_logger(__name__)


@dataclass
class TokenPair:
    """Access/refresh token pair handed to the store at login or refresh."""

    access_token: str
    refresh_token: str | None
    access_expires_in: int
    refresh_expires_in: int | None = None
    source: str = TokenSource.LOCAL
    idp_session_id: str | None = None

    @classmethod
    def from_token_set(cls, token_set: TokenSet) -> "TokenPair":
        return cls(
            access_token=token_set.access_token,
            refresh_token=token_set.refresh_token,
            access_expires_in=token_set.expires_in,
            refresh_expires_in=token_set.refresh_expires_in,
            source=TokenSource.DELEGATED,
            idp_session_id=token_set.session_state,
        )


@dataclass
class SessionMetadata:
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "SessionMetadata":
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        else:
            ip = request.client.host if request.client else None
        return cls(ip_address=ip, user_agent=request.headers.get("User-Agent"))


@dataclass
class ActiveSession:
    """A live session joined with its identity."""

    session: UserSessions
    identity: Users


def session_lifetime(remember_me: bool) -> int:
    """Session lifetime in seconds for the chosen tier."""
    return settings.SESSION_MAX_AGE_REMEMBER_ME if remember_me else settings.SESSION_MAX_AGE


def _later(column, value: datetime):  # type: ignore[no-untyped-def]
    """SQL expression keeping the later of the stored value and `value`."""
    return case((or_(column.is_(None), column < value), value), else_=column)


class SessionStore:
    """
    Session operations bound to one database session.

    Mutating operations commit before returning.
    """

    def __init__(
        self,
        db: AsyncSession,
        verifier: CredentialVerifier | None = None,
        idp: IdpClient | None = None,
    ) -> None:
        self.db = db
        self.verifier = verifier or get_credential_verifier()
        self.idp = idp or get_idp_client()

    async def _find(self, token: str) -> UserSessions | None:
        result = await self.db.execute(
            select(UserSessions).where(UserSessions.token_hash == hash_token(token))  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def _mark_inactive(self, record: UserSessions, reason: str) -> None:
        now = utcnow()
        record.is_active = False
        record.revoked_at = now
        record.updated_at = now
        await self.db.commit()
        logger.info("session_revoked", session_id=record.id, identity_id=record.user_id, reason=reason)

    # ===== Create =====

    async def create_session(
        self,
        identity_id: int,
        token_pair: TokenPair,
        metadata: SessionMetadata | None = None,
        remember_me: bool = False,
    ) -> str:
        """
        Verify the token pair, enforce the session limit and persist a new session.

        Returns:
            The opaque session token (the token pair is never returned)

        Raises:
            AuthError: token pair does not verify or belongs to another identity
        """
        claims = await self.verifier.authenticate(self.db, token_pair.access_token)
        if claims.id != identity_id:
            logger.warning(
                "session_token_subject_mismatch", identity_id=identity_id, token_identity=claims.id
            )
            raise InvalidCredential("Token pair does not belong to this account")

        await self.enforce_session_limit(identity_id)

        metadata = metadata or SessionMetadata()
        device = parse_user_agent(metadata.user_agent)
        now = utcnow()
        expires_at = now + timedelta(seconds=session_lifetime(remember_me))
        if token_pair.refresh_expires_in:
            refresh_expires_at = now + timedelta(seconds=token_pair.refresh_expires_in)
        elif token_pair.refresh_token:
            refresh_expires_at = expires_at
        else:
            refresh_expires_at = None

        token = create_session_token()
        record = UserSessions(
            token_hash=hash_token(token),
            user_id=identity_id,
            access_token=token_pair.access_token,
            refresh_token=token_pair.refresh_token,
            access_token_expires_at=now + timedelta(seconds=token_pair.access_expires_in),
            refresh_token_expires_at=refresh_expires_at,
            token_source=token_pair.source,
            idp_session_id=token_pair.idp_session_id,
            expires_at=expires_at,
            remember_me=remember_me,
            ip_address=metadata.ip_address,
            user_agent=(metadata.user_agent or "")[:500] or None,
            device_fingerprint=device_fingerprint(metadata.user_agent, metadata.ip_address),
            device_name=device.name,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        self.db.add(record)
        await self.db.commit()

        logger.info(
            "session_created",
            session_id=record.id,
            identity_id=identity_id,
            source=token_pair.source,
            remember_me=remember_me,
        )
        return token

    async def enforce_session_limit(self, identity_id: int) -> int:
        """
        Revoke least-recently-active sessions so one more fits under the limit.

        Returns:
            Number of sessions revoked
        """
        limit = settings.MAX_CONCURRENT_SESSIONS
        result = await self.db.execute(
            select(UserSessions)
            .where(UserSessions.user_id == identity_id)  # type: ignore[arg-type]
            .where(UserSessions.is_active == True)  # type: ignore[arg-type]  # noqa: E712
            .order_by(UserSessions.last_activity_at.asc(), UserSessions.id.asc())  # type: ignore[union-attr,attr-defined]
        )
        active = list(result.scalars().all())
        excess = len(active) - (limit - 1)
        if excess <= 0:
            return 0

        now = utcnow()
        for record in active[:excess]:
            record.is_active = False
            record.revoked_at = now
            record.updated_at = now
        await self.db.flush()

        logger.info("session_limit_enforced", identity_id=identity_id, revoked=excess, limit=limit)
        return excess

    # ===== Read =====

    async def get_session(self, token: str) -> ActiveSession | None:
        """
        Return the live session and its identity.

        An expired session is revoked by this call and reported as not found.
        """
        record = await self._find(token)
        if record is None or not record.is_active:
            return None

        if record.expires_at <= utcnow():
            await self._mark_inactive(record, reason="expired")
            return None

        identity = await get_identity(self.db, record.user_id)
        if identity is None or not identity.is_active:
            return None

        return ActiveSession(session=record, identity=identity)

    async def needs_refresh(self, token: str) -> bool:
        """True iff the wrapped access token has at most TOKEN_REFRESH_THRESHOLD seconds left."""
        record = await self._find(token)
        if record is None or not record.is_active:
            return False
        return self._needs_refresh(record)

    @staticmethod
    def _needs_refresh(record: UserSessions) -> bool:
        remaining = (record.access_token_expires_at - utcnow()).total_seconds()
        return remaining <= settings.TOKEN_REFRESH_THRESHOLD

    async def list_user_sessions(self, identity_id: int) -> list[UserSessions]:
        """Active, unexpired sessions, most recently active first."""
        result = await self.db.execute(
            select(UserSessions)
            .where(UserSessions.user_id == identity_id)  # type: ignore[arg-type]
            .where(UserSessions.is_active == True)  # type: ignore[arg-type]  # noqa: E712
            .where(UserSessions.expires_at > utcnow())  # type: ignore[arg-type]
            .order_by(UserSessions.last_activity_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def find_sessions_needing_refresh(self, limit: int | None = None) -> list[UserSessions]:
        """
        Active sessions whose access token is within the refresh threshold and
        that still hold a usable refresh token.
        """
        now = utcnow()
        horizon = now + timedelta(seconds=settings.TOKEN_REFRESH_THRESHOLD)
        result = await self.db.execute(
            select(UserSessions)
            .where(UserSessions.is_active == True)  # type: ignore[arg-type]  # noqa: E712
            .where(UserSessions.expires_at > now)  # type: ignore[arg-type]
            .where(UserSessions.access_token_expires_at <= horizon)  # type: ignore[arg-type]
            .where(UserSessions.refresh_token.is_not(None))  # type: ignore[union-attr]
            .where(
                or_(
                    UserSessions.refresh_token_expires_at.is_(None),  # type: ignore[union-attr]
                    UserSessions.refresh_token_expires_at > now,  # type: ignore[operator]
                )
            )
            .order_by(UserSessions.access_token_expires_at.asc())  # type: ignore[attr-defined]
            .limit(limit or settings.SESSION_REFRESH_BATCH_SIZE)
        )
        return list(result.scalars().all())

    # ===== Refresh =====

    async def issue_local_token_pair(
        self, identity: Users, refresh_expires_in: int | None = None
    ) -> TokenPair:
        """Mint a local access token (with current roles/permissions) and refresh token."""
        if identity.id is None:
            raise ValueError("Identity must be persisted before issuing tokens")
        roles = await get_identity_role_codes(self.db, identity.id)
        permissions = await get_identity_permission_codes(self.db, identity.id)
        access_expires_in = settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        access_token = create_access_token(
            identity.id,
            roles=roles,
            permissions=permissions,
            email=identity.email,
            username=identity.username,
            expires_delta=timedelta(seconds=access_expires_in),
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=create_refresh_token(),
            access_expires_in=access_expires_in,
            refresh_expires_in=refresh_expires_in
            if refresh_expires_in is not None
            else settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        )

    async def _delegated_refresh(self, record: UserSessions) -> TokenPair | None:
        if (
            record.token_source != TokenSource.DELEGATED
            or not record.refresh_token
            or not self.idp.is_configured
        ):
            return None
        try:
            if not await self.verifier.verify_refresh_token(record.refresh_token):
                logger.info("delegated_refresh_token_inactive", session_id=record.id)
                return None
            return TokenPair.from_token_set(await self.idp.refresh(record.refresh_token))
        except AuthError as e:
            logger.warning(
                "delegated_refresh_failed",
                session_id=record.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def _local_refresh(self, record: UserSessions) -> TokenPair | None:
        now = utcnow()
        refresh_deadline = record.refresh_token_expires_at or record.expires_at
        if not record.refresh_token or refresh_deadline <= now:
            return None
        identity = await get_identity(self.db, record.user_id)
        if identity is None or not identity.is_active:
            return None
        # Rotated token keeps the remaining lifetime of the old one
        remaining = int((refresh_deadline - now).total_seconds())
        pair = await self.issue_local_token_pair(identity, refresh_expires_in=remaining)
        pair.idp_session_id = record.idp_session_id
        return pair

    async def refresh_session(self, token: str) -> UserSessions:
        """
        Refresh the token pair behind an opaque session token.

        Raises:
            ExpiredCredential: unknown, inactive or
            expired session, or both refresh paths failed (session is revoked)
        """
        record = await self._find(token)
        if record is None or not record.is_active:
            raise ExpiredCredential("Session not found or no longer active")
        if record.expires_at <= utcnow():
            await self._mark_inactive(record, reason="expired")
            raise ExpiredCredential("Session has expired")
        return await self.refresh_record(record)

    def _superseded(self, record: UserSessions) -> UserSessions:
        """Result for a refresh that lost the race to a concurrent one."""
        if not record.is_active:
            raise ExpiredCredential("Session is no longer active")
        logger.info("session_refresh_superseded", session_id=record.id)
        return record

    async def refresh_record(self, record: UserSessions) -> UserSessions:
        """
        Refresh an already-loaded session row. Used by the scheduler.

        The write is a compare-and-swap on the refresh token read at load time.
        If a concurrent refresh rotated it first, that result is kept and
        returned: no local fallback, no revocation, no overwrite.
        """
        loaded_refresh_token = record.refresh_token

        pair = await self._delegated_refresh(record)
        if pair is None:
            await self.db.refresh(record)
            if record.refresh_token != loaded_refresh_token or not record.is_active:
                return self._superseded(record)
            pair = await self._local_refresh(record)
        if pair is None:
            await self._mark_inactive(record, reason="refresh_failed")
            raise ExpiredCredential("Session can no longer be refreshed; please sign in again")

        now = utcnow()
        values: dict[str, object] = {
            "access_token": pair.access_token,
            "token_source": pair.source,
            "updated_at": now,
            "access_token_expires_at": _later(
                UserSessions.access_token_expires_at,
                now + timedelta(seconds=pair.access_expires_in),
            ),
        }
        if pair.refresh_token:
            values["refresh_token"] = pair.refresh_token
        if pair.refresh_expires_in:
            values["refresh_token_expires_at"] = _later(
                UserSessions.refresh_token_expires_at,
                now + timedelta(seconds=pair.refresh_expires_in),
            )
        if pair.idp_session_id:
            values["idp_session_id"] = pair.idp_session_id

        if loaded_refresh_token is None:
            unchanged = UserSessions.refresh_token.is_(None)  # type: ignore[union-attr]
        else:
            unchanged = UserSessions.refresh_token == loaded_refresh_token
        result = await self.db.execute(
            update(UserSessions)
            .where(
                and_(
                    UserSessions.id == record.id,  # type: ignore[arg-type]
                    UserSessions.is_active == True,  # type: ignore[arg-type]  # noqa: E712
                    unchanged,  # type: ignore[arg-type]
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(record)
        if not result.rowcount:  # type: ignore[attr-defined]
            return self._superseded(record)

        logger.info(
            "session_refreshed",
            session_id=record.id,
            identity_id=record.user_id,
            source=pair.source,
        )
        return record

    # ===== Activity =====

    async def update_session_activity(self, token: str) -> None:
        now = utcnow()
        await self.db.execute(
            update(UserSessions)
            .where(UserSessions.token_hash == hash_token(token))  # type: ignore[arg-type]
            .where(UserSessions.is_active == True)  # type: ignore[arg-type]  # noqa: E712
            .values(last_activity_at=now)
        )
        await self.db.commit()

    # ===== Revoke =====

    async def _provider_logout(self, record: UserSessions) -> None:
        """Best-effort logout at the delegated provider; never raises."""
        if (
            record.token_source != TokenSource.DELEGATED
            or not record.refresh_token
            or not self.idp.is_configured
        ):
            return
        try:
            await self.idp.logout(record.refresh_token)
        except AuthError as e:
            logger.warning(
                "idp_logout_failed",
                session_id=record.id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def revoke_session(self, token: str) -> bool:
        """
        Log out one session.

        Returns:
            True if an active session was revoked
        """
        record = await self._find(token)
        if record is None or not record.is_active:
            return False
        await self._provider_logout(record)
        await self._mark_inactive(record, reason="logout")
        return True

    async def revoke_session_by_id(self, identity_id: int, session_id: int) -> bool:
        result = await self.db.execute(
            select(UserSessions)
            .where(UserSessions.id == session_id)  # type: ignore[arg-type]
            .where(UserSessions.user_id == identity_id)  # type: ignore[arg-type]
        )
        record = result.scalar_one_or_none()
        if record is None or not record.is_active:
            return False
        await self._provider_logout(record)
        await self._mark_inactive(record, reason="revoked_by_owner")
        return True

    async def _bulk_revoke(self, identity_id: int, keep_token: str | None = None) -> int:
        now = utcnow()
        stmt = (
            update(UserSessions)
            .where(UserSessions.user_id == identity_id)  # type: ignore[arg-type]
            .where(UserSessions.is_active == True)  # type: ignore[arg-type]  # noqa: E712
        )
        if keep_token is not None:
            stmt = stmt.where(UserSessions.token_hash != hash_token(keep_token))  # type: ignore[arg-type]
        result = await self.db.execute(stmt.values(is_active=False, revoked_at=now, updated_at=now))
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def revoke_other_sessions(self, identity_id: int, current_token: str) -> int:
        count = await self._bulk_revoke(identity_id, keep_token=current_token)
        logger.info("other_sessions_revoked", identity_id=identity_id, count=count)
        return count

    async def revoke_all_sessions(self, identity_id: int) -> int:
        count = await self._bulk_revoke(identity_id)
        logger.info("all_sessions_revoked", identity_id=identity_id, count=count)
        return count

    async def cleanup_expired_sessions(self) -> int:
        """Mark every active session past its expiry inactive. Returns the count."""
        now = utcnow()
        result = await self.db.execute(
            update(UserSessions)
            .where(UserSessions.is_active == True)  # type: ignore[arg-type]  # noqa: E712
            .where(UserSessions.expires_at <= now)  # type: ignore[arg-type]
            .values(is_active=False, revoked_at=now, updated_at=now)
        )
        await self.db.commit()
        count = result.rowcount or 0  # type: ignore[attr-defined]
        if count:
            logger.info("sessions_cleaned_up", count=count)
        return count
