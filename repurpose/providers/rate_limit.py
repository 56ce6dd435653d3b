"""
Outbound rate limiter.

Durable token bucket per `provider:user`, shared by every worker process
through the SQLite database. Capacity is the provider's creations-per-minute
ceiling and the bucket refills at capacity/60 tokens per second.
"""
import asyncio
import time
import logging
from typing import Awaitable, Callable, Optional

from repurpose.config import ProvidersConfig
from repurpose.persistence.database import Database

from .exceptions import ProviderTransientFailure

logger = logging.getLogger(__name__)


class TokenBucketLimiter:
    """Delays job creation instead of letting the provider reject it."""

    def __init__(
        self,
        db: Database,
        providers: ProvidersConfig,
        max_wait_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.providers = providers
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep

    @staticmethod
    def bucket_key(provider: str, user_id: str) -> str:
        return f"{provider}:{user_id}"

    def try_take(self, provider: str, user_id: str) -> float:
        """
        Take one token if available.

        Returns:
            0.0 when a token was taken, otherwise seconds until one is available
        """
        capacity = float(max(1, self.providers.rate_per_minute(provider)))
        refill_per_second = capacity / 60.0
        key = self.bucket_key(provider, user_id)

        with self.db.transaction() as conn:
            now = self._clock()
            row = conn.execute(
                "SELECT tokens, updated_at FROM rate_limit_buckets WHERE bucket_key = ?",
                (key,)
            ).fetchone()

            if row is None:
                tokens = capacity
            else:
                elapsed = max(0.0, now - row["updated_at"])
                tokens = min(capacity, row["tokens"] + elapsed * refill_per_second)

            if tokens >= 1.0:
                tokens -= 1.0
                wait = 0.0
            else:
                wait = (1.0 - tokens) / refill_per_second

            conn.execute(
                """
                INSERT INTO rate_limit_buckets (bucket_key, tokens, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(bucket_key) DO UPDATE SET
                    tokens = excluded.tokens, updated_at = excluded.updated_at
                """,
                (key, tokens, now)
            )

        return wait

    async def acquire(self, provider: str, user_id: str, max_wait: Optional[float] = None) -> None:
        """
        Wait for a token.

        Raises:
            ProviderTransientFailure: If the token would take longer than max_wait
        """
        budget = self.max_wait_seconds if max_wait is None else max_wait
        waited = 0.0

        while True:
            wait = self.try_take(provider, user_id)
            if wait == 0.0:
                return

            if waited + wait > budget:
                raise ProviderTransientFailure(
                    provider,
                    f"Rate limit wait exceeded {budget:.0f}s for user {user_id}",
                    status_code=429,
                )

            logger.info(f"[{provider.upper()}] Rate limited for user {user_id}, waiting {wait:.1f}s")
            await self._sleep(wait)
            waited += wait
