"""
ChainTrust — Rate Limiting
Sliding window rate limiter per caller identity and action class.

Action classes are tracked independently:
    http          general write actions      10 / 60s
    verification  verification attempts       5 / 300s
    report        community reports           3 / 600s

A refusal is a boolean, not an error. Callers turn it into a RateLimitError
and, for security-sensitive classes, an audit event.
"""
import time
import hashlib
from collections import deque
from typing import Deque, Dict, Optional, Tuple

import structlog

from chaintrust.config import settings

logger = structlog.get_logger()

HTTP = "http"
VERIFICATION = "verification"
REPORT = "report"


class RateLimiter:
    """
    In-process limiter. History per (action_class, identity) is a deque of
    admitted timestamps, hard-capped so a single abusive identity cannot
    grow it without bound.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, Tuple[int, int]]] = None,
        clock=None,
        history_cap: int = None,
        history_trim: int = None,
        cleanup_window: int = None,
    ):
        self.limits = dict(limits or settings.rate_limits)
        self.clock = clock
        self.history_cap = history_cap or settings.RATE_HISTORY_CAP
        self.history_trim = history_trim or settings.RATE_HISTORY_TRIM
        self.cleanup_window = cleanup_window or settings.RATE_CLEANUP_WINDOW
        self._history: Dict[Tuple[str, str], Deque[float]] = {}

    def _now(self) -> float:
        return self.clock.now() if self.clock else time.time()

    def _limit(self, action_class: str) -> Tuple[int, int]:
        if action_class not in self.limits:
            raise KeyError(f"Unknown action class: {action_class}")
        return self.limits[action_class]

    def _prune(self, history: Deque[float], window_start: float):
        while history and history[0] <= window_start:
            history.popleft()

    async def allow(self, identity: str, action_class: str) -> bool:
        """Admit and record the call iff the in-window count is below the limit."""
        limit, window = self._limit(action_class)
        now = self._now()
        key = (action_class, identity)
        history = self._history.setdefault(key, deque())
        self._prune(history, now - window)

        if len(history) >= limit:
            logger.warning("rate_limit_exceeded",
                           identity=identity, action_class=action_class,
                           count=len(history), limit=limit)
            return False

        history.append(now)
        if len(history) > self.history_cap:
            # Keep only the most recent entries
            self._history[key] = deque(list(history)[-self.history_trim:])
        return True

    def retry_after(self, identity: str, action_class: str) -> int:
        """Seconds until the oldest in-window entry ages out."""
        limit, window = self._limit(action_class)
        history = self._history.get((action_class, identity))
        if not history:
            return 0
        return max(int(history[0] + window - self._now()) + 1, 0)

    def info(self, identity: str, action_class: str = HTTP) -> Tuple[int, int]:
        """(requests in the last minute, seconds since the oldest retained entry)"""
        now = self._now()
        history = self._history.get((action_class, identity))
        if not history:
            return 0, 0
        recent = sum(1 for ts in history if ts > now - 60)
        return recent, int(now - history[0])

    async def cleanup(self) -> int:
        """Drop identities with no activity inside the cleanup window."""
        now = self._now()
        removed = 0
        for key in list(self._history.keys()):
            _, window = self.limits.get(key[0], (0, 0))
            horizon = max(self.cleanup_window, window)
            history = self._history[key]
            self._prune(history, now - horizon)
            if not history:
                del self._history[key]
                removed += 1
        if removed:
            logger.info("rate_limit_cleanup", removed=removed, remaining=len(self._history))
        return removed

    def tracked_identities(self) -> int:
        return len(self._history)


class RedisRateLimiter:
    """
    Same contract backed by Redis sorted sets so limits hold across worker
    processes. Falls through silently if Redis is unavailable (fail-open).
    """

    def __init__(self, redis_client=None, limits: Optional[Dict[str, Tuple[int, int]]] = None, clock=None):
        self.limits = dict(limits or settings.rate_limits)
        self.clock = clock
        self._redis = redis_client

    def _get_redis(self):
        """Lazy Redis connection."""
        if self._redis is not None:
            return self._redis
        try:
            import redis
            self._redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
            self._redis.ping()
            logger.info("rate_limiter_redis_connected")
            return self._redis
        except Exception as e:
            logger.warning("rate_limiter_redis_unavailable", error=str(e))
            return None

    def _now(self) -> float:
        return self.clock.now() if self.clock else time.time()

    @staticmethod
    def _rate_key(identity: str, action_class: str) -> str:
        identity_hash = hashlib.sha256(identity.encode()).hexdigest()[:16]
        return f"ct:rl:{action_class}:{identity_hash}"

    async def allow(self, identity: str, action_class: str) -> bool:
        limit, window = self.limits[action_class]
        r = self._get_redis()
        if r is None:
            return True  # fail-open: if Redis is down, allow requests

        key = self._rate_key(identity, action_class)
        now = self._now()
        try:
            pipe = r.pipeline()
            # Remove old entries outside the window
            pipe.zremrangebyscore(key, 0, now - window)
            pipe.zcard(key)
            current_count = pipe.execute()[1]

            if current_count >= limit:
                logger.warning("rate_limit_exceeded",
                               identity=identity, action_class=action_class,
                               count=current_count, limit=limit)
                return False

            pipe = r.pipeline()
            pipe.zadd(key, {repr(now): now})
            pipe.expire(key, window + 1)
            pipe.execute()
            return True
        except Exception as e:
            # Redis error, fail open
            logger.warning("rate_limit_check_failed", error=str(e))
            return True

    def retry_after(self, identity: str, action_class: str) -> int:
        _, window = self.limits[action_class]
        r = self._get_redis()
        if r is None:
            return 0
        try:
            oldest = r.zrange(self._rate_key(identity, action_class), 0, 0, withscores=True)
        except Exception as e:
            logger.warning("rate_limit_check_failed", error=str(e))
            return window
        if not oldest:
            return 0
        return max(int(window - (self._now() - oldest[0][1])) + 1, 0)

    def info(self, identity: str, action_class: str = HTTP) -> Tuple[int, int]:
        r = self._get_redis()
        if r is None:
            return 0, 0
        key = self._rate_key(identity, action_class)
        now = self._now()
        try:
            recent = r.zcount(key, now - 60, now)
            oldest = r.zrange(key, 0, 0, withscores=True)
        except Exception as e:
            logger.warning("rate_limit_check_failed", error=str(e))
            return 0, 0
        return int(recent), int(now - oldest[0][1]) if oldest else 0

    async def cleanup(self) -> int:
        # Keys carry their own TTL
        return 0


def build_rate_limiter(clock=None):
    """Limiter for the configured RATE_LIMIT_BACKEND."""
    if settings.RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimiter(clock=clock)
    return RateLimiter(clock=clock)
