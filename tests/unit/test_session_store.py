"""
Tests for the session store.

Covers creation, lookup with lazy expiry, the concurrent-session limit,
refresh (including the never-decreasing expiry rule and racing refreshes),
the delegated provider paths, revocation and cleanup.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import TokenSource, settings
from app.core.database import utcnow
from app.core.errors import ExpiredCredential, ExternalProviderUnavailable, InvalidCredential
from app.core.security import decode_local_token, hash_token
from app.models.user import Users
from app.models.user_session import UserSessions
from app.services.idp_client import TokenSet
from app.services.session_store import SessionMetadata, SessionStore, session_lifetime
from tests.conftest import make_identity

CHROME_ON_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


async def _new_session(
    store: SessionStore, identity: Users, remember_me: bool = False, **metadata: str
) -> str:
    pair = await store.issue_local_token_pair(identity)
    assert identity.id is not None
    return await store.create_session(
        identity.id, pair, SessionMetadata(**metadata), remember_me=remember_me
    )


async def _record(db: AsyncSession, token: str) -> UserSessions:
    result = await db.execute(
        select(UserSessions)
        .where(UserSessions.token_hash == hash_token(token))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class RotatingProvider:
    """Provider double that rotates the refresh token on every refresh, like a real realm."""

    is_configured = True

    def __init__(self) -> None:
        self.current = "rt-1"
        self.refreshes = 0
        self.logout = AsyncMock()

    async def refresh(self, refresh_token: str) -> TokenSet:
        if refresh_token != self.current:
            raise InvalidCredential("Token is not active")
        self.refreshes += 1
        self.current = f"rt-{self.refreshes + 1}"
        return TokenSet(
            access_token=f"delegated-at-{self.refreshes}",
            refresh_token=self.current,
            expires_in=300,
            refresh_expires_in=1800,
        )


def _verifier_for(provider: RotatingProvider) -> MagicMock:
    verifier = MagicMock()
    verifier.verify_refresh_token = AsyncMock(side_effect=lambda token: token == provider.current)
    return verifier


def _provider_store(db: AsyncSession, provider: RotatingProvider) -> SessionStore:
    return SessionStore(db, verifier=_verifier_for(provider), idp=provider)  # type: ignore[arg-type]


async def _delegate(db: AsyncSession, token: str, refresh_token: str = "rt-1") -> None:
    """Turn a session into one backed by provider tokens that are due for refresh."""
    record = await _record(db, token)
    record.token_source = TokenSource.DELEGATED
    record.access_token = "delegated-at-0"
    record.refresh_token = refresh_token
    record.access_token_expires_at = utcnow() + timedelta(seconds=30)
    await db.commit()


@pytest.mark.unit
class TestCreateSession:
    async def test_creates_retrievable_session(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(
            store, test_identity, ip_address="10.0.0.1", user_agent=CHROME_ON_WINDOWS
        )

        active = await store.get_session(token)

        assert active is not None
        assert active.identity.id == test_identity.id
        assert active.session.token_hash == hash_token(token)
        assert active.session.token_hash != token
        assert active.session.browser == "Chrome"
        assert active.session.os == "Windows"
        assert active.session.device_type == "desktop"
        assert active.session.ip_address == "10.0.0.1"

    async def test_lifetime_tiers(self, db_session: AsyncSession, test_identity: Users) -> None:
        store = SessionStore(db_session)
        short = await _record(db_session, await _new_session(store, test_identity))
        long = await _record(
            db_session, await _new_session(store, test_identity, remember_me=True)
        )

        assert session_lifetime(False) == settings.SESSION_MAX_AGE
        assert session_lifetime(True) == settings.SESSION_MAX_AGE_REMEMBER_ME
        short_life = (short.expires_at - short.created_at).total_seconds()
        long_life = (long.expires_at - long.created_at).total_seconds()
        assert abs(short_life - settings.SESSION_MAX_AGE) < 5
        assert abs(long_life - settings.SESSION_MAX_AGE_REMEMBER_ME) < 5
        assert long.remember_me is True

    async def test_rejects_token_pair_of_another_identity(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        other = await make_identity(db_session, "otheruser")
        store = SessionStore(db_session)
        pair = await store.issue_local_token_pair(other)

        assert test_identity.id is not None
        with pytest.raises(InvalidCredential):
            await store.create_session(test_identity.id, pair)

    async def test_rejects_garbage_access_token(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        pair = await store.issue_local_token_pair(test_identity)
        pair.access_token = "garbage"

        assert test_identity.id is not None
        with pytest.raises(InvalidCredential):
            await store.create_session(test_identity.id, pair)

    async def test_session_limit_revokes_least_recently_active(
        self,
        db_session: AsyncSession,
        test_identity: Users,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(settings, "MAX_CONCURRENT_SESSIONS", 2)
        store = SessionStore(db_session)

        first = await _new_session(store, test_identity)
        second = await _new_session(store, test_identity)
        # Make the first session the most recently used one
        record = await _record(db_session, first)
        record.last_activity_at = utcnow() + timedelta(minutes=1)
        await db_session.commit()

        third = await _new_session(store, test_identity)

        assert await store.get_session(first) is not None
        assert await store.get_session(second) is None
        assert await store.get_session(third) is not None
        assert test_identity.id is not None
        assert len(await store.list_user_sessions(test_identity.id)) == 2


@pytest.mark.unit
class TestGetSession:
    async def test_unknown_token(self, db_session: AsyncSession) -> None:
        assert await SessionStore(db_session).get_session("no-such-token") is None

    async def test_expired_session_is_revoked_on_read(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        record = await _record(db_session, token)
        record.expires_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()

        assert await store.get_session(token) is None

        record = await _record(db_session, token)
        assert record.is_active is False
        assert record.revoked_at is not None

    async def test_revoked_session_stays_revoked(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        assert await store.revoke_session(token) is True

        assert await store.get_session(token) is None
        assert await store.revoke_session(token) is False
        with pytest.raises(ExpiredCredential):
            await store.refresh_session(token)


@pytest.mark.unit
class TestRefresh:
    async def test_needs_refresh_near_access_expiry(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        assert await store.needs_refresh(token) is False

        record = await _record(db_session, token)
        record.access_token_expires_at = utcnow() + timedelta(
            seconds=settings.TOKEN_REFRESH_THRESHOLD - 10
        )
        await db_session.commit()

        assert await store.needs_refresh(token) is True
        assert await store.needs_refresh("unknown") is False

    async def test_local_refresh_rotates_refresh_token(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        before = await _record(db_session, token)
        old_refresh = before.refresh_token
        before.access_token_expires_at = utcnow() + timedelta(seconds=30)
        await db_session.commit()

        refreshed = await store.refresh_session(token)

        assert refreshed.refresh_token != old_refresh
        assert refreshed.access_token_expires_at > utcnow() + timedelta(minutes=10)
        assert refreshed.is_active is True

    async def test_expiry_never_decreases(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        """A refresh that would shorten the stored access expiry keeps the later value."""
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        record = await _record(db_session, token)
        far_future = (utcnow() + timedelta(days=10)).replace(microsecond=0)
        record.access_token_expires_at = far_future
        await db_session.commit()

        first = await store.refresh_session(token)
        second = await store.refresh_session(token)

        assert first.access_token_expires_at == far_future
        assert second.access_token_expires_at == far_future

    async def test_failed_refresh_revokes_session(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        record = await _record(db_session, token)
        record.refresh_token = None
        await db_session.commit()

        with pytest.raises(ExpiredCredential):
            await store.refresh_session(token)

        assert await store.get_session(token) is None
        assert (await _record(db_session, token)).is_active is False

    async def test_expired_session_cannot_refresh(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        record = await _record(db_session, token)
        record.expires_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()

        with pytest.raises(ExpiredCredential):
            await store.refresh_session(token)

    async def test_find_sessions_needing_refresh(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        due = await _new_session(store, test_identity)
        await _new_session(store, test_identity)
        record = await _record(db_session, due)
        record.access_token_expires_at = utcnow() + timedelta(seconds=10)
        await db_session.commit()

        found = await store.find_sessions_needing_refresh()

        assert [r.token_hash for r in found] == [hash_token(due)]


@pytest.mark.unit
class TestConcurrentRefresh:
    async def test_racing_delegated_refresh_keeps_provider_tokens(
        self,
        db_session: AsyncSession,
        session_maker: async_sessionmaker[AsyncSession],
        test_identity: Users,
    ) -> None:
        """Both callers loaded the row before either refreshed it."""
        token = await _new_session(SessionStore(db_session), test_identity)
        await _delegate(db_session, token)
        provider = RotatingProvider()
        verifier = _verifier_for(provider)

        async with session_maker() as db_a, session_maker() as db_b:
            store_a = SessionStore(db_a, verifier=verifier, idp=provider)  # type: ignore[arg-type]
            store_b = SessionStore(db_b, verifier=verifier, idp=provider)  # type: ignore[arg-type]
            [row_a] = await store_a.find_sessions_needing_refresh()
            [row_b] = await store_b.find_sessions_needing_refresh()

            first = await store_a.refresh_record(row_a)
            second = await store_b.refresh_record(row_b)

            assert first.refresh_token == "rt-2"
            assert second.refresh_token == "rt-2"
            assert second.token_source == TokenSource.DELEGATED

        final = await _record(db_session, token)
        assert final.is_active is True
        assert final.token_source == TokenSource.DELEGATED
        assert final.refresh_token == "rt-2"
        assert final.access_token == "delegated-at-1"
        assert provider.refreshes == 1

    async def test_racing_local_refresh_returns_winner(
        self,
        db_session: AsyncSession,
        session_maker: async_sessionmaker[AsyncSession],
        test_identity: Users,
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)

        async with session_maker() as db_a, session_maker() as db_b:
            store_a = SessionStore(db_a)
            store_b = SessionStore(db_b)
            row_a = await store_a._find(token)
            row_b = await store_b._find(token)
            assert row_a is not None and row_b is not None

            first = await store_a.refresh_record(row_a)
            second = await store_b.refresh_record(row_b)

            assert second.refresh_token == first.refresh_token
            assert second.access_token == first.access_token

        final = await _record(db_session, token)
        assert final.is_active is True
        assert final.refresh_token == first.refresh_token

    async def test_revoked_while_refreshing(
        self,
        db_session: AsyncSession,
        session_maker: async_sessionmaker[AsyncSession],
        test_identity: Users,
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)

        async with session_maker() as db_a:
            store_a = SessionStore(db_a)
            row = await store_a._find(token)
            assert row is not None
            assert await SessionStore(db_session).revoke_session(token) is True

            with pytest.raises(ExpiredCredential):
                await store_a.refresh_record(row)


@pytest.mark.unit
class TestDelegatedSessions:
    async def test_refresh_uses_provider_first(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)
        await _delegate(db_session, token)
        provider = RotatingProvider()
        store = _provider_store(db_session, provider)

        refreshed = await store.refresh_session(token)

        assert refreshed.token_source == TokenSource.DELEGATED
        assert refreshed.access_token == "delegated-at-1"
        assert refreshed.refresh_token == "rt-2"
        assert refreshed.access_token_expires_at > utcnow() + timedelta(seconds=200)

    async def test_dead_provider_token_falls_back_to_local(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)
        await _delegate(db_session, token, refresh_token="rt-revoked")
        provider = RotatingProvider()
        store = _provider_store(db_session, provider)

        refreshed = await store.refresh_session(token)

        assert provider.refreshes == 0
        assert refreshed.is_active is True
        assert refreshed.token_source == TokenSource.LOCAL
        assert decode_local_token(refreshed.access_token)["sub"] == str(test_identity.id)

    async def test_provider_outage_falls_back_to_local(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)
        await _delegate(db_session, token)
        provider = RotatingProvider()
        verifier = _verifier_for(provider)
        verifier.verify_refresh_token.side_effect = ExternalProviderUnavailable()
        store = SessionStore(db_session, verifier=verifier, idp=provider)  # type: ignore[arg-type]

        refreshed = await store.refresh_session(token)

        assert refreshed.token_source == TokenSource.LOCAL

    async def test_revoke_logs_out_at_provider(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)
        await _delegate(db_session, token)
        provider = RotatingProvider()
        store = _provider_store(db_session, provider)

        assert await store.revoke_session(token) is True

        provider.logout.assert_awaited_once_with("rt-1")
        assert (await _record(db_session, token)).is_active is False

    async def test_provider_logout_failure_does_not_block_revocation(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        token = await _new_session(SessionStore(db_session), test_identity)
        await _delegate(db_session, token)
        provider = RotatingProvider()
        provider.logout.side_effect = ExternalProviderUnavailable()
        store = _provider_store(db_session, provider)

        assert await store.revoke_session(token) is True

        assert await store.get_session(token) is None
        assert (await _record(db_session, token)).revoked_at is not None


@pytest.mark.unit
class TestRevocation:
    async def test_revoke_other_sessions_keeps_current(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        current = await _new_session(store, test_identity)
        other_a = await _new_session(store, test_identity)
        other_b = await _new_session(store, test_identity)

        assert test_identity.id is not None
        count = await store.revoke_other_sessions(test_identity.id, current)

        assert count == 2
        assert await store.get_session(current) is not None
        assert await store.get_session(other_a) is None
        assert await store.get_session(other_b) is None

    async def test_revoke_all_sessions(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        tokens = [await _new_session(store, test_identity) for _ in range(3)]
        other = await make_identity(db_session, "bystander")
        bystander_token = await _new_session(store, other)

        assert test_identity.id is not None
        assert await store.revoke_all_sessions(test_identity.id) == 3
        assert await store.revoke_all_sessions(test_identity.id) == 0
        for token in tokens:
            assert await store.get_session(token) is None
        assert await store.get_session(bystander_token) is not None

    async def test_revoke_by_id_checks_owner(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        record = await _record(db_session, token)
        other = await make_identity(db_session, "intruder")

        assert other.id is not None and test_identity.id is not None and record.id is not None
        assert await store.revoke_session_by_id(other.id, record.id) is False
        assert await store.revoke_session_by_id(test_identity.id, record.id) is True
        assert await store.get_session(token) is None


@pytest.mark.unit
class TestCleanup:
    async def test_cleanup_marks_expired_inactive(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        store = SessionStore(db_session)
        expired = await _new_session(store, test_identity)
        live = await _new_session(store, test_identity)
        record = await _record(db_session, expired)
        record.expires_at = utcnow() - timedelta(minutes=5)
        await db_session.commit()

        assert await store.cleanup_expired_sessions() == 1
        assert await store.cleanup_expired_sessions() == 0
        assert (await _record(db_session, expired)).is_active is False
        assert (await _record(db_session, live)).is_active is True

    async def test_activity_update(self, db_session: AsyncSession, test_identity: Users) -> None:
        store = SessionStore(db_session)
        token = await _new_session(store, test_identity)
        record = await _record(db_session, token)
        record.last_activity_at = utcnow() - timedelta(hours=1)
        await db_session.commit()

        await store.update_session_activity(token)

        assert (await _record(db_session, token)).last_activity_at > utcnow() - timedelta(
            minutes=1
        )
