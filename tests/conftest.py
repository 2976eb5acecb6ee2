"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite database per test function, created from
the SQLModel metadata. Settings are read at import time, so the environment
is prepared before anything from `app` is imported.
"""

import os
import secrets
import tempfile
import time
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

# Must run before `app.config` is imported anywhere
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-entropy-for-hs256")
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'identity-api-unused.db'}"
)
os.environ["ENVIRONMENT"] = "development"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["IDP_ENABLED"] = "false"
os.environ["IDP_SYNC_ENABLED"] = "false"
os.environ["DB_CREATE_TABLES"] = "false"

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient, Response  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel  # noqa: E402

import app.models  # noqa: E402, F401  registers every table
from app.config import RoleCode, settings  # noqa: E402
from app.core import auth as auth_module  # noqa: E402
from app.core.auth import AuthDispatcher  # noqa: E402
from app.core.database import get_db  # noqa: E402
from app.core.permissions import seed_roles  # noqa: E402
from app.core.security import get_password_hash  # noqa: E402
from app.main import app as main_app  # noqa: E402
from app.models.user import Users  # noqa: E402
from app.services.idp_client import IdpClient  # noqa: E402
from app.services.identity_store import create_identity  # noqa: E402
from app.services.oidc_keys import SigningKeys  # noqa: E402

TEST_PASSWORD = "TestPassword123!"


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture(scope="function")
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh SQLite database for each test function.

    Function scope keeps the engine in the same event loop as the test.
    """
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Database session with the system roles seeded."""
    async with session_maker() as session:
        await seed_roles(session)
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def dispatcher(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AuthDispatcher, None]:
    """
    Auth dispatcher whose background session upkeep uses the test database.

    Outstanding background tasks are drained before the database goes away.
    """
    test_dispatcher = AuthDispatcher(session_factory=session_maker)
    previous = auth_module._dispatcher
    auth_module._dispatcher = test_dispatcher

    yield test_dispatcher

    await test_dispatcher.drain()
    auth_module._dispatcher = previous


@pytest.fixture(scope="function")
def app(db_session: AsyncSession, dispatcher: AuthDispatcher) -> FastAPI:
    """
    Create FastAPI app with test database session.

    This overrides the database dependency to use the test session.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    main_app.dependency_overrides[get_db] = override_get_db

    yield main_app

    main_app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def client(app: FastAPI, dispatcher: AuthDispatcher) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for API tests.

    Background session upkeep started by a request is awaited before the
    response is handed to the test, so database assertions see its effects.
    """

    async def drain_background(response: Response) -> None:
        await dispatcher.drain()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        event_hooks={"response": [drain_background]},
    ) as ac:
        yield ac


# =============================================================================
# Test Data Fixtures
# =============================================================================


async def make_identity(
    db: AsyncSession,
    username: str,
    email: str | None = None,
    password: str | None = TEST_PASSWORD,
    role_code: str = RoleCode.DEFAULT,
    **fields: object,
) -> Users:
    """Create and commit an identity with a local password."""
    identity = await create_identity(
        db,
        email=email or f"{username}@example.com",
        username=username,
        password_hash=get_password_hash(password) if password else None,
        role_code=role_code,
        **fields,
    )
    await db.commit()
    await db.refresh(identity)
    return identity


@pytest.fixture
async def test_identity(db_session: AsyncSession) -> Users:
    """
    A local identity with the default role and the password TEST_PASSWORD.

    Usage:
        async def test_login(client, test_identity):
            await login(client, test_identity.username)
    """
    return await make_identity(db_session, "testuser")


@pytest.fixture
async def admin_identity(db_session: AsyncSession) -> Users:
    return await make_identity(db_session, "adminuser", role_code=RoleCode.ADMIN)


async def login(
    client: AsyncClient,
    username: str,
    password: str = TEST_PASSWORD,
    remember_me: bool = False,
) -> str:
    """
    Log in through the API and return the opaque session token.

    The client's cookie jar is cleared so later requests only carry the
    credentials a test passes explicitly.
    """
    response = await client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password, "rememberMe": remember_me},
    )
    assert response.status_code == 200, response.text
    token = response.cookies[settings.SESSION_COOKIE_NAME]
    client.cookies.clear()
    return token


def session_headers(session_token: str) -> dict[str, str]:
    return {"Cookie": f"{settings.SESSION_COOKIE_NAME}={session_token}"}


@pytest.fixture
async def session_token(client: AsyncClient, test_identity: Users) -> str:
    """Session token of a logged-in `test_identity`."""
    return await login(client, test_identity.username)


@pytest.fixture
async def admin_session_token(client: AsyncClient, admin_identity: Users) -> str:
    return await login(client, admin_identity.username)


# =============================================================================
# Delegated Provider
# =============================================================================

IDP_TEST_URL = "https://idp.test"
IDP_TEST_CLIENT_ID = "platform"


@pytest.fixture
def idp_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Enable the delegated provider, pointed at IDP_TEST_URL."""
    monkeypatch.setattr(settings, "IDP_ENABLED", True)
    monkeypatch.setattr(settings, "IDP_SERVER_URL", IDP_TEST_URL)
    monkeypatch.setattr(settings, "IDP_CLIENT_ID", IDP_TEST_CLIENT_ID)
    monkeypatch.setattr(settings, "IDP_CLIENT_SECRET", "platform-secret")


def _realm_key(kid: str) -> SigningKeys:
    return SigningKeys(
        rsa.generate_private_key(public_exponent=65537, key_size=2048), kid=kid, ephemeral=True
    )


class FakeRealm:
    """
    Provider realm served in memory through httpx.MockTransport.

    Implements the token (password, authorization_code and refresh_token
    grants), userinfo, introspection, certs and logout endpoints. Access
    tokens are RS256 JWTs signed with the realm's current key. Set `down` to
    answer everything with 503, or `certs_status` to break only the JWKS.
    """

    def __init__(self) -> None:
        self.keys = [_realm_key("realm-key-1")]
        self.users: dict[str, dict[str, Any]] = {}
        self.passwords: dict[str, str] = {}
        self.codes: dict[str, str] = {}
        self.down = False
        self.certs_status = 200
        self.token_lifetime = 900
        self.paths: list[str] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> IdpClient:
        return IdpClient(transport=self.transport())

    def add_user(self, username: str, password: str, email: str | None = None) -> dict[str, Any]:
        user = {
            "sub": f"realm-{username}",
            "email": email or f"{username}@example.com",
            "email_verified": True,
            "preferred_username": username,
            "given_name": username.title(),
        }
        self.users[user["sub"]] = user
        self.passwords[username] = password
        return user

    def rotate_key(self) -> None:
        """Sign with a new key; the old one stays published."""
        self.keys.insert(0, _realm_key(f"realm-key-{len(self.keys) + 1}"))

    def access_token(self, sub: str, **claims: Any) -> str:
        now = int(time.time())
        payload = {
            "iss": settings.IDP_REALM_URL,
            "sub": sub,
            "azp": IDP_TEST_CLIENT_ID,
            "iat": now,
            "exp": now + self.token_lifetime,
            "jti": secrets.token_hex(8),
            "realm_access": {"roles": ["student"]},
            **claims,
        }
        return self.keys[0].sign(payload)

    def _claims(self, token: str) -> dict[str, Any] | None:
        for key in self.keys:
            try:
                return jwt.decode(
                    token,
                    key.public_key,
                    algorithms=["RS256"],
                    options={"verify_aud": False},
                )
            except jwt.PyJWTError:
                continue
        return None

    def _token_response(self, sub: str) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "access_token": self.access_token(sub),
                "refresh_token": f"rt-{sub}",
                "expires_in": self.token_lifetime,
                "refresh_expires_in": 1800,
                "token_type": "Bearer",
            },
        )

    def _grant(self, form: dict[str, str]) -> httpx.Response:
        rejected = httpx.Response(
            401, json={"error": "invalid_grant", "error_description": "Invalid user credentials"}
        )
        grant_type = form.get("grant_type")
        if grant_type == "password":
            username = form.get("username", "")
            if self.passwords.get(username) != form.get("password"):
                return rejected
            return self._token_response(f"realm-{username}")
        if grant_type == "authorization_code":
            username = self.codes.pop(form.get("code", ""), None)
            if username is None:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return self._token_response(f"realm-{username}")
        if grant_type == "refresh_token":
            sub = form.get("refresh_token", "").removeprefix("rt-")
            if sub not in self.users:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return self._token_response(sub)
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix(urlsplit(settings.IDP_OIDC_URL).path)
        self.paths.append(path)
        if self.down:
            return httpx.Response(503)

        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if path == "/certs":
            if self.certs_status != 200:
                return httpx.Response(self.certs_status)
            return httpx.Response(200, json={"keys": [k.jwks()["keys"][0] for k in self.keys]})
        if path == "/token":
            return self._grant(form)
        if path == "/userinfo":
            bearer = request.headers.get("Authorization", "").removeprefix("Bearer ")
            claims = self._claims(bearer)
            if claims is None or claims["sub"] not in self.users:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.users[claims["sub"]])
        if path == "/token/introspect":
            token = form.get("token", "")
            if token.removeprefix("rt-") in self.users:
                return httpx.Response(200, json={"active": True, "typ": "Refresh"})
            claims = self._claims(token)
            if claims is None:
                return httpx.Response(200, json={"active": False})
            return httpx.Response(200, json={"active": True, **claims})
        if path == "/logout":
            return httpx.Response(204)
        return httpx.Response(404)


@pytest.fixture
def realm(idp_settings: None) -> FakeRealm:
    return FakeRealm()
