"""Fixed-window admission control keyed by client identity.

A window opens on the first request from an identity and lasts
``window_seconds``; requests beyond the tier's limit are refused until the
window closes. The in-memory table is scoped to one process: with N
instances the effective limit is N times the configured one. Configure the
Redis store when a shared counter is required.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import threading
import time

import redis

from app.core.config import Settings, get_settings
from app.core.logging_config import get_logger

logger = get_logger(__name__)


class RateLimitTier(str, Enum):
    STANDARD = "standard"
    ELEVATED = "elevated"


@dataclass(frozen=True)
class TierPolicy:
    limit: int
    window_seconds: int


@dataclass
class RateLimitRecord:
    count: int
    window_reset_at: float


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int


def tier_policies(settings: Settings) -> dict[RateLimitTier, TierPolicy]:
    return {
        RateLimitTier.STANDARD: TierPolicy(
            limit=max(1, settings.rate_limit_standard_limit),
            window_seconds=max(1, settings.rate_limit_standard_window_seconds),
        ),
        RateLimitTier.ELEVATED: TierPolicy(
            limit=max(1, settings.rate_limit_elevated_limit),
            window_seconds=max(1, settings.rate_limit_elevated_window_seconds),
        ),
    }


class RateLimitWindowTable:
    """Process-local window records. Created at startup, never persisted."""

    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def hit(self, key: str, policy: TierPolicy, now: float) -> tuple[bool, RateLimitRecord]:
        with self._lock:
            self._prune(now)
            record = self._records.get(key)
            if record is None or now >= record.window_reset_at:
                record = RateLimitRecord(count=1, window_reset_at=now + policy.window_seconds)
                self._records[key] = record
                return True, RateLimitRecord(record.count, record.window_reset_at)
            if record.count >= policy.limit:
                return False, RateLimitRecord(record.count, record.window_reset_at)
            record.count += 1
            return True, RateLimitRecord(record.count, record.window_reset_at)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def _prune(self, now: float) -> None:
        stale_keys = [
            key for key, record in self._records.items() if now >= record.window_reset_at + 1
        ]
        for stale_key in stale_keys:
            self._records.pop(stale_key, None)


class RedisWindowStore:
    """Same fixed-window contract on a shared Redis counter."""

    def __init__(self, client: redis.Redis, prefix: str = "referrals:ratelimit") -> None:
        self._redis = client
        self._prefix = prefix

    def hit(self, key: str, policy: TierPolicy, now: float) -> tuple[bool, RateLimitRecord]:
        redis_key = f"{self._prefix}:{key}"
        window_ms = policy.window_seconds * 1000
        pipe = self._redis.pipeline()
        # SET NX opens the window with its expiry in the same step as the first hit.
        pipe.set(redis_key, 0, px=window_ms, nx=True)
        pipe.incr(redis_key, 1)
        pipe.pttl(redis_key)
        _, count_value, ttl_value = pipe.execute()
        count = int(count_value)
        ttl_ms = int(ttl_value) if isinstance(ttl_value, int) else -1
        if ttl_ms < 0:
            self._redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        reset_at = now + ttl_ms / 1000.0
        if count > policy.limit:
            return False, RateLimitRecord(policy.limit, reset_at)
        return True, RateLimitRecord(count, reset_at)


class RateLimitService:
    def __init__(
        self,
        table: RateLimitWindowTable,
        *,
        policies: dict[RateLimitTier, TierPolicy],
        shared_store: RedisWindowStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._table = table
        self._policies = policies
        self._shared_store = shared_store
        self._clock = clock

    def policy_for(self, tier: RateLimitTier) -> TierPolicy:
        return self._policies[tier]

    def check(self, identity: str, tier: RateLimitTier = RateLimitTier.STANDARD) -> RateLimitDecision:
        policy = self._policies[tier]
        now = self._clock()
        allowed, record = self._hit(identity, policy, now)
        remaining = max(0, policy.limit - record.count) if allowed else 0
        reset_seconds = max(1, int(record.window_reset_at - now))
        decision = RateLimitDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=remaining,
            reset_at=record.window_reset_at,
            retry_after_seconds=reset_seconds if not allowed else 0,
        )
        if not allowed:
            logger.info("rate_limit_denied", identity=identity, tier=tier.value)
        return decision

    def _hit(self, key: str, policy: TierPolicy, now: float) -> tuple[bool, RateLimitRecord]:
        if self._shared_store is not None:
            try:
                return self._shared_store.hit(key, policy, now)
            except redis.RedisError as exc:
                logger.warning("rate_limit_redis_unavailable", error=str(exc))
        return self._table.hit(key, policy, now)


def build_rate_limit_service(settings: Settings | None = None) -> RateLimitService:
    settings = settings or get_settings()
    shared_store = None
    if settings.rate_limit_backend == "redis":
        shared_store = RedisWindowStore(redis.Redis.from_url(settings.redis_url, decode_responses=True))
    return RateLimitService(
        RateLimitWindowTable(),
        policies=tier_policies(settings),
        shared_store=shared_store,
    )
