"""
Tests for the credential verifier.

Covers:
- Delegated role flattening
- Strategy ordering (Retry falls through, Fatal stops)
- Error consolidation precedence
- Local token verification against the identity store
- Delegated token verification against a fake provider realm (JWKS, issuer
  and audience checks, key rotation, introspection fallback)
"""

import time
from datetime import timedelta
from unittest.mock import MagicMock

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import TokenSource, UserStatus, settings
from app.core.errors import (
    AuthError,
    ExpiredCredential,
    InvalidCredential,
    UnresolvableIdentity,
)
from app.core.security import create_access_token
from app.models.user import Users
from app.services.credentials import (
    JWKS_MIN_RELOAD_SECONDS,
    Claims,
    CredentialVerifier,
    DelegatedTokenStrategy,
    Fatal,
    LocalTokenStrategy,
    Ok,
    Retry,
    VerificationOutcome,
    consolidate_errors,
    flatten_delegated_roles,
    is_token_expiring_soon,
)
from tests.conftest import FakeRealm, make_identity


class FakeStrategy:
    """Strategy returning a fixed outcome and counting its calls."""

    def __init__(self, name: str, outcome: VerificationOutcome, applies: bool = True) -> None:
        self.name = name
        self.outcome = outcome
        self._applies = applies
        self.calls = 0

    def applies(self) -> bool:
        return self._applies

    async def verify(self, db: AsyncSession, token: str) -> VerificationOutcome:
        self.calls += 1
        return self.outcome


def _claims(identity_id: int = 1) -> Claims:
    return Claims(id=identity_id, email="a@example.com", username="a")


@pytest.mark.unit
class TestFlattenDelegatedRoles:
    def test_realm_and_resource_roles_are_merged(self) -> None:
        payload = {
            "realm_access": {"roles": ["student", "permission:course:read"]},
            "resource_access": {
                "platform": {"roles": ["instructor", "student"]},
                "other": {"roles": ["permission:course:write", "permission:course:read"]},
            },
        }
        roles, permissions = flatten_delegated_roles(payload)
        assert roles == ["student", "instructor"]
        assert permissions == ["course:read", "course:write"]

    def test_permission_tokens_never_appear_in_roles(self) -> None:
        roles, permissions = flatten_delegated_roles(
            {"realm_access": {"roles": ["permission:admin"]}}
        )
        assert roles == []
        assert permissions == ["admin"]

    def test_missing_sections(self) -> None:
        assert flatten_delegated_roles({}) == ([], [])
        assert flatten_delegated_roles({"realm_access": None, "resource_access": {"x": None}}) == (
            [],
            [],
        )


@pytest.mark.unit
class TestConsolidateErrors:
    def test_expired_wins(self) -> None:
        errors: list[AuthError] = [InvalidCredential(), UnresolvableIdentity(), ExpiredCredential()]
        assert isinstance(consolidate_errors(errors), ExpiredCredential)

    def test_unresolvable_before_invalid(self) -> None:
        errors: list[AuthError] = [InvalidCredential(), UnresolvableIdentity()]
        assert isinstance(consolidate_errors(errors), UnresolvableIdentity)

    def test_no_errors_is_invalid(self) -> None:
        assert isinstance(consolidate_errors([]), InvalidCredential)


@pytest.mark.unit
class TestStrategyOrdering:
    async def test_retry_falls_through_to_next_strategy(self) -> None:
        first = FakeStrategy("delegated", Retry(InvalidCredential()))
        second = FakeStrategy("local", Ok(_claims(7)))
        verifier = CredentialVerifier([first, second])

        claims = await verifier.authenticate(MagicMock(), "token")

        assert claims.id == 7
        assert first.calls == 1
        assert second.calls == 1

    async def test_fatal_stops_the_chain(self) -> None:
        first = FakeStrategy("delegated", Fatal(ExpiredCredential()))
        second = FakeStrategy("local", Ok(_claims()))
        verifier = CredentialVerifier([first, second])

        with pytest.raises(ExpiredCredential):
            await verifier.authenticate(MagicMock(), "token")
        assert second.calls == 0

    async def test_skips_strategies_that_do_not_apply(self) -> None:
        skipped = FakeStrategy("delegated", Ok(_claims(1)), applies=False)
        local = FakeStrategy("local", Ok(_claims(2)))
        verifier = CredentialVerifier([skipped, local])

        claims = await verifier.authenticate(MagicMock(), "token")

        assert claims.id == 2
        assert skipped.calls == 0

    async def test_consolidated_error_when_all_fail(self) -> None:
        verifier = CredentialVerifier(
            [
                FakeStrategy("delegated", Retry(UnresolvableIdentity())),
                FakeStrategy("local", Fatal(InvalidCredential())),
            ]
        )
        with pytest.raises(UnresolvableIdentity):
            await verifier.authenticate(MagicMock(), "token")

    async def test_verify_with_named_strategy(self) -> None:
        verifier = CredentialVerifier(
            [
                FakeStrategy("delegated", Retry(InvalidCredential())),
                FakeStrategy("local", Ok(_claims(3))),
            ]
        )
        assert (await verifier.verify_local_token(MagicMock(), "token")).id == 3
        with pytest.raises(InvalidCredential):
            await verifier.verify_delegated(MagicMock(), "token")


@pytest.mark.unit
class TestLocalTokenStrategy:
    async def test_valid_token(self, db_session: AsyncSession, test_identity: Users) -> None:
        assert test_identity.id is not None
        token = create_access_token(
            test_identity.id, roles=["student", "student"], permissions=["course:read"]
        )

        outcome = await LocalTokenStrategy().verify(db_session, token)

        assert isinstance(outcome, Ok)
        assert outcome.claims.id == test_identity.id
        assert outcome.claims.roles == ["student"]
        assert outcome.claims.permissions == ["course:read"]
        assert outcome.claims.source == TokenSource.LOCAL
        assert outcome.claims.expires_at is not None

    async def test_expired_token_is_fatal(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        assert test_identity.id is not None
        token = create_access_token(test_identity.id, expires_delta=timedelta(seconds=-1))

        outcome = await LocalTokenStrategy().verify(db_session, token)

        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, ExpiredCredential)

    async def test_unknown_identity(self, db_session: AsyncSession) -> None:
        outcome = await LocalTokenStrategy().verify(db_session, create_access_token(999999))
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, UnresolvableIdentity)

    async def test_suspended_identity(
        self, db_session: AsyncSession, test_identity: Users
    ) -> None:
        assert test_identity.id is not None
        test_identity.status = UserStatus.SUSPENDED
        await db_session.commit()

        outcome = await LocalTokenStrategy().verify(
            db_session, create_access_token(test_identity.id)
        )

        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, UnresolvableIdentity)

    async def test_malformed_subject(self, db_session: AsyncSession) -> None:
        token = jwt.encode(
            {"sub": "not-a-number", "exp": int(time.time()) + 60, "type": "access"},
            settings.SECRET_KEY,
            algorithm=settings.ALGORITHM,
        )
        outcome = await LocalTokenStrategy().verify(db_session, token)
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, InvalidCredential)


@pytest.mark.unit
class TestLocalPasswordCheck:
    def test_missing_hash_never_verifies(self) -> None:
        assert CredentialVerifier.verify_local("anything", None) is False


@pytest.mark.unit
class TestExpiringSoon:
    def test_near_expiry(self) -> None:
        token = jwt.encode({"exp": int(time.time()) + 10}, "k", algorithm="HS256")
        assert is_token_expiring_soon(token, threshold=60)

    def test_far_from_expiry(self) -> None:
        token = jwt.encode({"exp": int(time.time()) + 3600}, "k", algorithm="HS256")
        assert not is_token_expiring_soon(token, threshold=60)

    def test_unreadable_token_counts_as_expiring(self) -> None:
        assert is_token_expiring_soon("garbage")


async def _realm_identity(db: AsyncSession, realm: FakeRealm, username: str = "alice") -> Users:
    user = realm.add_user(username, "secret")
    return await make_identity(db, username, external_id=user["sub"])


@pytest.mark.unit
class TestDelegatedTokenStrategy:
    async def test_realm_token(self, db_session: AsyncSession, realm: FakeRealm) -> None:
        identity = await _realm_identity(db_session, realm)
        token = realm.access_token(
            "realm-alice",
            realm_access={"roles": ["instructor", "permission:course:write"]},
        )

        outcome = await DelegatedTokenStrategy(realm.client()).verify(db_session, token)

        assert isinstance(outcome, Ok)
        assert outcome.claims.id == identity.id
        assert outcome.claims.source == TokenSource.DELEGATED
        assert outcome.claims.subject == "realm-alice"
        assert outcome.claims.roles == ["instructor"]
        assert outcome.claims.permissions == ["course:write"]

    async def test_wrong_issuer(self, db_session: AsyncSession, realm: FakeRealm) -> None:
        await _realm_identity(db_session, realm)
        token = realm.access_token("realm-alice", iss="https://idp.test/realms/other")

        outcome = await DelegatedTokenStrategy(realm.client()).verify(db_session, token)

        assert isinstance(outcome, Retry)
        assert isinstance(outcome.error, InvalidCredential)

    async def test_audience_or_azp_must_name_the_client(
        self, db_session: AsyncSession, realm: FakeRealm
    ) -> None:
        await _realm_identity(db_session, realm)
        strategy = DelegatedTokenStrategy(realm.client())

        by_aud = realm.access_token("realm-alice", azp="other-app", aud=["account", "platform"])
        foreign = realm.access_token("realm-alice", azp="other-app", aud="account")

        assert isinstance(await strategy.verify(db_session, by_aud), Ok)
        outcome = await strategy.verify(db_session, foreign)
        assert isinstance(outcome, Retry)
        assert isinstance(outcome.error, InvalidCredential)

    async def test_expired_token(self, db_session: AsyncSession, realm: FakeRealm) -> None:
        await _realm_identity(db_session, realm)
        token = realm.access_token("realm-alice", exp=int(time.time()) - 3600)

        outcome = await DelegatedTokenStrategy(realm.client()).verify(db_session, token)

        assert isinstance(outcome, Retry)
        assert isinstance(outcome.error, ExpiredCredential)

    async def test_unknown_subject(self, db_session: AsyncSession, realm: FakeRealm) -> None:
        token = realm.access_token("realm-nobody")

        outcome = await DelegatedTokenStrategy(realm.client()).verify(db_session, token)

        assert isinstance(outcome, Retry)
        assert isinstance(outcome.error, UnresolvableIdentity)

    async def test_rotated_key_is_picked_up(
        self, db_session: AsyncSession, realm: FakeRealm
    ) -> None:
        await _realm_identity(db_session, realm)
        strategy = DelegatedTokenStrategy(realm.client())
        assert isinstance(await strategy.verify(db_session, realm.access_token("realm-alice")), Ok)

        realm.rotate_key()
        strategy._jwks_fetched_at -= JWKS_MIN_RELOAD_SECONDS + 1
        outcome = await strategy.verify(db_session, realm.access_token("realm-alice"))

        assert isinstance(outcome, Ok)
        assert realm.paths.count("/certs") == 2

    async def test_unknown_kid_reloads_are_throttled(
        self, db_session: AsyncSession, realm: FakeRealm
    ) -> None:
        await _realm_identity(db_session, realm)
        strategy = DelegatedTokenStrategy(realm.client())
        await strategy.verify(db_session, realm.access_token("realm-alice"))

        forged = [
            jwt.encode(
                {"sub": "realm-alice", "exp": int(time.time()) + 60},
                realm.keys[0].private_key,
                algorithm="RS256",
                headers={"kid": f"made-up-{n}"},
            )
            for n in range(5)
        ]
        for token in forged:
            outcome = await strategy.verify(db_session, token)
            assert isinstance(outcome, Retry)
            assert isinstance(outcome.error, InvalidCredential)

        assert realm.paths.count("/certs") == 1

    async def test_introspection_when_jwks_unavailable(
        self, db_session: AsyncSession, realm: FakeRealm
    ) -> None:
        identity = await _realm_identity(db_session, realm)
        realm.certs_status = 404

        outcome = await DelegatedTokenStrategy(realm.client()).verify(
            db_session, realm.access_token("realm-alice")
        )

        assert isinstance(outcome, Ok)
        assert outcome.claims.id == identity.id
        assert "/token/introspect" in realm.paths

    async def test_inactive_on_introspection(
        self, db_session: AsyncSession, realm: FakeRealm
    ) -> None:
        await _realm_identity(db_session, realm)
        realm.certs_status = 503
        forged = jwt.encode(
            {"sub": "realm-alice", "exp": int(time.time()) + 60},
            _other_key(),
            algorithm="RS256",
            headers={"kid": "realm-key-1"},
        )

        outcome = await DelegatedTokenStrategy(realm.client()).verify(db_session, forged)

        assert isinstance(outcome, Retry)
        assert isinstance(outcome.error, InvalidCredential)


def _other_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.mark.unit
class TestVerifierWithProvider:
    @staticmethod
    def _verifier(realm: FakeRealm) -> CredentialVerifier:
        idp = realm.client()
        return CredentialVerifier([DelegatedTokenStrategy(idp), LocalTokenStrategy()], idp=idp)

    async def test_local_token_verifies_while_provider_down(
        self, db_session: AsyncSession, test_identity: Users, realm: FakeRealm
    ) -> None:
        assert test_identity.id is not None
        realm.down = True

        claims = await self._verifier(realm).authenticate(
            db_session, create_access_token(test_identity.id)
        )

        assert claims.id == test_identity.id
        assert claims.source == TokenSource.LOCAL

    async def test_realm_token_when_jwks_is_missing(
        self, db_session: AsyncSession, realm: FakeRealm
    ) -> None:
        identity = await _realm_identity(db_session, realm)
        realm.certs_status = 404

        claims = await self._verifier(realm).authenticate(
            db_session, realm.access_token("realm-alice")
        )

        assert claims.id == identity.id
        assert claims.source == TokenSource.DELEGATED

    async def test_refresh_token_liveness(self, realm: FakeRealm) -> None:
        realm.add_user("alice", "secret")
        verifier = self._verifier(realm)
        tokens = await realm.client().password_grant("alice", "secret")

        assert tokens.refresh_token is not None
        assert await verifier.verify_refresh_token(tokens.refresh_token) is True
        assert await verifier.verify_refresh_token("rt-garbage") is False
