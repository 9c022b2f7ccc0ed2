from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from fastapi import Request

from petconsult.config import Settings, get_settings
from petconsult.logging import get_logger
from petconsult.service.admin import AdminService
from petconsult.service.auth import AuthService
from petconsult.service.ledger import RefreshTokenLedger
from petconsult.service.passwords import PasswordService
from petconsult.service.sms import SmsNotifier, build_notifier
from petconsult.service.tokens import TokenIssuer
from petconsult.service.verification import VerificationCodeService
from petconsult.storage.memory import MemoryStore
from petconsult.storage.postgres import PostgresStore
from petconsult.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


class Runtime:
    """Owns the store, cache and services for one application instance.

    Built explicitly from settings and closed explicitly on shutdown; there
    is no module-level instance.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        notifier: Optional[SmsNotifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache and self.settings.redis_url:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; start Redis, unset "
                    "REDIS_URL, or set ALLOW_REDIS_FALLBACK_DEV=true."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else None,
                message="Rate limits are tracked in-process only.",
            )

        self.notifier = notifier or build_notifier(self.settings)
        self.passwords = PasswordService(self.settings)
        self.issuer = TokenIssuer(self.settings)
        self.ledger = RefreshTokenLedger(self.store)
        self.verification = VerificationCodeService(
            self.store, self.notifier, self.settings
        )
        self.auth = AuthService(
            self.store,
            self.issuer,
            self.ledger,
            self.verification,
            self.passwords,
            self.settings,
        )
        self.admin = AdminService(
            self.store, self.issuer, self.passwords, self.settings
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            sms_provider=self.settings.sms_provider,
            registration_requires_verification=self.settings.registration_requires_verification,
        )

    def purge_expired(self) -> Tuple[int, int]:
        """Drop stale refresh-token rows and verification codes."""
        tokens = self.ledger.purge_expired(self.settings.refresh_token_retention)
        codes = self.verification.purge_expired()
        return tokens, codes

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await self.notifier.close()
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the runtime bound to the application."""
    return request.app.state.runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce rate limits even when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) + 1 if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
