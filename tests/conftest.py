"""Shared test fixtures.

Tests run against a throwaway SQLite database (aiosqlite) per test. The
Postgres-only column types are compiled to their SQLite equivalents below.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy import BigInteger, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.compiler import compiles

from sfam.auth.jwt import create_access_token, reset_keys
from sfam.config import get_settings
from sfam.database import close_db, get_engine, init_db, session_scope
from sfam.db.base import Base
from sfam.db.models import User
from sfam.email import service as email_service_module
from sfam.email.service import BaseEmailProvider, EmailService


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(_type: Any, _compiler: Any, **_kw: Any) -> str:
    return "JSON"


@compiles(BigInteger, "sqlite")
def _compile_bigint_sqlite(_type: Any, _compiler: Any, **_kw: Any) -> str:
    # INTEGER PRIMARY KEY is the rowid alias, so ids autoincrement
    return "INTEGER"


def _write_test_keys() -> tuple[str, str]:
    """Generate an RSA key pair for RS256 tokens."""
    tmpdir = tempfile.mkdtemp(prefix="sfam_test_keys_")
    private_path = os.path.join(tmpdir, "jwt_private.pem")
    public_path = os.path.join(tmpdir, "jwt_public.pem")

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with open(private_path, "wb") as f:
        f.write(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
    with open(public_path, "wb") as f:
        f.write(
            key.public_key().public_bytes(
                serialization.Encoding.PEM,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )
    return private_path, public_path


_PRIVATE_KEY_PATH, _PUBLIC_KEY_PATH = _write_test_keys()


@pytest.fixture(autouse=True)
def test_settings(tmp_path, monkeypatch) -> Any:
    """Point settings at test keys, a temp upload dir and fixed secrets."""
    monkeypatch.setenv("SF_JWT_PRIVATE_KEY_PATH", _PRIVATE_KEY_PATH)
    monkeypatch.setenv("SF_JWT_PUBLIC_KEY_PATH", _PUBLIC_KEY_PATH)
    monkeypatch.setenv("SF_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("SF_CRON_SECRET", "cron-test-secret")
    monkeypatch.setenv("SF_MAILBOX_DOMAIN", "successfamily.online")
    monkeypatch.setenv("SF_INBOUND_WEBHOOK_SECRET", "")
    monkeypatch.setenv("SF_VAPID_PUBLIC_KEY", "")
    monkeypatch.setenv("SF_VAPID_PRIVATE_KEY", "")
    monkeypatch.setenv("SF_LOG_FORMAT", "console")
    get_settings.cache_clear()
    reset_keys()
    yield get_settings()
    get_settings.cache_clear()
    reset_keys()


class FakeEmailProvider(BaseEmailProvider):
    """Records every send instead of delivering it."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: str | None = None,
    ) -> bool:
        self.sent.append({
            "to": to_email,
            "subject": subject,
            "html": html_body,
            "text": text_body,
            "sender": sender,
        })
        return self.succeed


class FakeRedis:
    """In-memory subset of the redis client used by the services."""

    def __init__(self) -> None:
        self.store: dict[str, Any] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key: str) -> Any:
        return self.store.get(key)

    async def getdel(self, key: str) -> Any:
        return self.store.pop(key, None)

    async def set(self, key: str, value: Any, ex: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def incr(self, key: str) -> int:
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key: str, seconds: int) -> bool:
        return key in self.store

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    def events_for(self, user_id: int) -> list[dict[str, Any]]:
        return [json.loads(m) for ch, m in self.published if ch == f"ws:user:{user_id}"]


@pytest.fixture
def fake_email() -> Any:
    provider = FakeEmailProvider()
    email_service_module._email_service = EmailService(provider=provider)
    yield provider
    email_service_module.reset_email_service()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[Any, None]:
    """Fresh SQLite database with the full schema."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    engine = get_engine()

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await close_db()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    async with session_scope() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_engine, fake_email, fake_redis) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against a fresh app; Redis is replaced by ``fake_redis``."""
    from sfam.dependencies import get_optional_redis, get_redis_dep
    from sfam.main import create_app

    app = create_app()

    async def _redis() -> AsyncGenerator[FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_redis_dep] = _redis
    app.dependency_overrides[get_optional_redis] = _redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_user(
    db: AsyncSession,
    email: str = "member@example.com",
    username: str = "member",
    *,
    first_name: str | None = "Test",
    last_name: str | None = "Member",
    role: str = "user",
    is_banned: bool = False,
) -> User:
    """Insert a user directly; no password, so it cannot log in."""
    user = User(
        email=email,
        username=username,
        username_normalized=username.lower(),
        first_name=first_name,
        last_name=last_name,
        role=role,
        is_banned=is_banned,
    )
    db.add(user)
    await db.flush()
    return user


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email, user.role)}"}


@pytest_asyncio.fixture
async def member(db_session) -> User:
    user = await create_user(db_session, "alice@example.com", "alice", first_name="Alice", last_name="Smith")
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def other_member(db_session) -> User:
    user = await create_user(db_session, "bob@example.com", "bob", first_name="Bob", last_name="Jones")
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def admin(db_session) -> User:
    user = await create_user(db_session, "admin@example.com", "admin", first_name="Ada", last_name="Admin", role="admin")
    await db_session.commit()
    return user


@pytest.fixture
def make_user(db_session) -> Any:
    """Factory fixture: ``await make_user("carol@example.com", "carol")`` commits a new user."""

    async def _make(email: str, username: str, **kwargs: Any) -> User:
        user = await create_user(db_session, email, username, **kwargs)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def headers_for() -> Any:
    return auth_headers
