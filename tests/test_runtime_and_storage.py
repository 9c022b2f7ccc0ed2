"""Runtime wiring, rate limiting, settings validation and storage unit tests."""

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from psycopg import errors

from conftest import make_settings
from petconsult.service.runtime import Runtime, _mask_url_password, check_rate_limit
from petconsult.storage.errors import ConstraintViolation
from petconsult.storage.memory import MemoryStore
from petconsult.storage.models import NewPet
from petconsult.storage.postgres import PostgresStore, _user_from_row


class TestCheckRateLimit:
    @pytest.fixture
    def local_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    async def test_zero_limit_always_passes(self, local_runtime):
        assert await check_rate_limit(local_runtime, "k", 0, 60) is True

    async def test_in_process_bucket_exhausts(self, local_runtime):
        results = [await check_rate_limit(local_runtime, "k", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_keys_are_independent(self, local_runtime):
        for _ in range(2):
            await check_rate_limit(local_runtime, "a", 2, 60)
        assert await check_rate_limit(local_runtime, "a", 2, 60) is False
        assert await check_rate_limit(local_runtime, "b", 2, 60) is True

    async def test_remaining_and_reset_reported(self, local_runtime):
        allowed, remaining, reset = await check_rate_limit(
            local_runtime, "k", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)
        await check_rate_limit(local_runtime, "k", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            local_runtime, "k", 2, 60, return_remaining=True
        )
        assert allowed is False and remaining == 0 and reset > 0

    async def test_redis_cache_used_when_present(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)

        assert await check_rate_limit(runtime, "k", 5, 60) is True
        runtime.cache.check_rate_limit.assert_awaited_once_with(
            "k", 5, 60, return_remaining=False, cost=1
        )


class TestSettings:
    def test_secrets_required(self):
        with pytest.raises(ValueError, match="JWT_SECRET"):
            make_settings(jwt_secret=None)

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError, match="at least"):
            make_settings(jwt_refresh_secret="too-short")

    def test_identical_secrets_rejected(self):
        secret = "x" * 40
        with pytest.raises(ValueError, match="differ"):
            make_settings(jwt_secret=secret, jwt_refresh_secret=secret)

    def test_durations_drive_ttls(self):
        settings = make_settings(jwt_expires_in="5m", jwt_refresh_expires_in="7d")
        assert settings.access_token_ttl == timedelta(minutes=5)
        assert settings.refresh_token_ttl == timedelta(days=7)

    def test_invalid_duration_rejected(self):
        with pytest.raises(ValueError):
            make_settings(jwt_expires_in="forever")

    def test_env_loading(self, monkeypatch):
        from petconsult.config import get_settings

        monkeypatch.setenv("JWT_EXPIRES_IN", "20m")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = get_settings()

        assert settings.access_token_ttl == timedelta(minutes=20)
        assert settings.cors_origins == ["https://a.example", "https://b.example"]


class TestRuntime:
    def test_memory_runtime_wires_services(self, settings):
        runtime = Runtime(settings)

        assert isinstance(runtime.store, MemoryStore)
        assert runtime.cache is None
        assert runtime.auth.ledger is runtime.ledger
        asyncio.run(runtime.close())

    def test_unreachable_redis_fails_outside_test_mode(self):
        settings = make_settings(
            test_mode=False, redis_url="redis://127.0.0.1:1/0", allow_redis_fallback_dev=False
        )
        with pytest.raises(RuntimeError, match="Redis"):
            Runtime(settings)

    def test_unreachable_redis_falls_back_when_allowed(self):
        settings = make_settings(
            test_mode=False, redis_url="redis://127.0.0.1:1/0", allow_redis_fallback_dev=True
        )
        runtime = Runtime(settings)
        assert runtime.cache is None

    def test_purge_expired_counts_both_kinds(self, runtime, store):
        user, _ = store.create_user("09121234567", "hash", "Sara", "Ahmadi")
        long_ago = datetime.now(timezone.utc) - timedelta(days=60)
        store.create_refresh_token("h1", user.id, long_ago)

        assert runtime.purge_expired() == (1, 0)

    def test_password_masked_in_urls(self):
        assert _mask_url_password("redis://:pw@localhost:6379/0") == "redis://:***@localhost:6379/0"
        assert _mask_url_password("postgresql://u:pw@db/app") == "postgresql://u:***@db/app"
        assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"


class TestMemoryStore:
    def test_duplicate_mobile_is_constraint_violation(self, store):
        store.create_user("09121234567", "hash", "Sara", "Ahmadi")
        with pytest.raises(ConstraintViolation):
            store.create_user("09121234567", "hash", "Ali", "Karimi")

    def test_records_are_copies(self, store):
        user, _ = store.create_user("09121234567", "hash", "Sara", "Ahmadi")
        user.is_active = False

        assert store.get_user(user.id).is_active is True

    def test_delete_with_pets_requires_flag(self, store):
        user, _ = store.create_user(
            "09121234567", "hash", "Sara", "Ahmadi", pet=NewPet(name="Rex", species="dog")
        )
        with pytest.raises(ConstraintViolation):
            store.delete_user(user.id)
        assert store.delete_user(user.id, include_pets=True) is True
        assert store.pets == {}


class _FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class _FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        result = self.results.pop(0) if self.results else _FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class _FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _stub_store(results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = _FakePool(_FakeConnection(results))
    return store


class TestPostgresStoreUnit:
    def test_rotation_losing_race_inserts_nothing(self):
        store = _stub_store([_FakeCursor(row=None)])
        now = datetime.now(timezone.utc)

        assert store.rotate_refresh_token("old", "new", "u1", now, now=now) is None
        statements = store.pool.conn.statements
        assert len(statements) == 1
        assert statements[0].startswith("UPDATE refresh_token")

    def test_revoke_all_returns_rowcount(self):
        store = _stub_store([_FakeCursor(rowcount=3)])

        assert store.revoke_user_refresh_tokens("u1", now=datetime.now(timezone.utc)) == 3

    def test_user_row_conversion(self):
        now = datetime.now(timezone.utc)
        user = _user_from_row(
            {
                "id": "u1",
                "mobile": "09121234567",
                "password_hash": "h",
                "first_name": "Sara",
                "last_name": "Ahmadi",
                "role": "USER",
                "is_active": True,
                "is_verified": True,
                "created_at": now,
                "updated_at": now,
                "last_login_at": None,
            }
        )
        assert user.is_verified is True
        assert user.created_at == now

    def test_non_uuid_ids_are_not_found(self):
        store = _stub_store(
            [
                errors.InvalidTextRepresentation("invalid input syntax for type uuid"),
                errors.InvalidTextRepresentation("invalid input syntax for type uuid"),
            ]
        )

        assert store.get_user("abc") is None
        assert store.get_admin("abc") is None
