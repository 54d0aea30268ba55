import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict

from fastapi import Request
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


def rate_limit_key(identity, action: str) -> str:
    return f"{identity}:{action}"


class RateLimiter(ABC):
    """Sliding-window counter keyed by identity and action.

    ``allow`` records the hit when it is allowed; denied calls are not counted.
    """

    @abstractmethod
    def allow(self, key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        ...

    @abstractmethod
    def sweep(self, max_age_seconds: int) -> int:
        """Drop entries older than ``max_age_seconds``; returns how many were removed."""


class InMemoryRateLimiter(RateLimiter):
    """Per-process limiter. Only correct when a single instance serves traffic."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        window_start = now - window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= max_requests:
                retry_after = math.ceil(hits[0] + window_seconds - now)
                return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=max(1, retry_after))
            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=max_requests - len(hits))

    def sweep(self, max_age_seconds: int) -> int:
        cutoff = self._clock() - max_age_seconds
        removed = 0
        with self._lock:
            for key in list(self._hits):
                hits = self._hits[key]
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                    removed += 1
                if not hits:
                    del self._hits[key]
        return removed


class SqlRateLimiter(RateLimiter):
    """Limiter backed by the shared database, safe across instances.

    Every key has a ``RateLimitBucket`` row. ``allow`` locks it before counting,
    so concurrent calls for the same key (from any instance) count and record
    one at a time. Each call uses its own short session so a limiter hit is
    durable even if the surrounding request later fails.
    """

    def __init__(self, session_factory, clock: Callable[[], datetime] = datetime.utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def _ensure_bucket(self, key: str, now: datetime) -> None:
        from storefront.models.rate_limit import RateLimitBucket

        db = self._session_factory()
        try:
            if db.get(RateLimitBucket, key) is None:
                db.add(RateLimitBucket(key=key, created_at=now))
                db.commit()
        except IntegrityError:
            # Another instance created it first
            db.rollback()
        finally:
            db.close()

    def allow(self, key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        from storefront.models.rate_limit import RateLimitBucket, RateLimitHit

        now = self._clock()
        window_start = now - timedelta(seconds=window_seconds)
        self._ensure_bucket(key, now)
        db = self._session_factory()
        try:
            # Held until commit/rollback; a waiting caller re-counts after the winner's hit is committed
            db.query(RateLimitBucket).filter(RateLimitBucket.key == key).with_for_update().one()
            hits = (
                db.query(RateLimitHit.created_at)
                .filter(RateLimitHit.key == key, RateLimitHit.created_at > window_start)
                .order_by(RateLimitHit.created_at.asc())
                .all()
            )
            if len(hits) >= max_requests:
                oldest = hits[0][0]
                retry_after = math.ceil((oldest + timedelta(seconds=window_seconds) - now).total_seconds())
                db.rollback()
                return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=max(1, retry_after))
            db.add(RateLimitHit(key=key, created_at=now))
            db.commit()
            return RateLimitDecision(allowed=True, remaining=max_requests - len(hits) - 1)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def sweep(self, max_age_seconds: int) -> int:
        from storefront.models.rate_limit import RateLimitHit

        cutoff = self._clock() - timedelta(seconds=max_age_seconds)
        db = self._session_factory()
        try:
            removed = db.query(RateLimitHit).filter(RateLimitHit.created_at <= cutoff).delete(synchronize_session=False)
            db.commit()
            return removed
        finally:
            db.close()


def build_rate_limiter(backend: str, session_factory=None) -> RateLimiter:
    if backend == "database":
        if session_factory is None:
            raise ValueError("database rate limiter needs a session factory")
        return SqlRateLimiter(session_factory)
    if backend != "memory":
        logger.warning("Unknown RATE_LIMIT_BACKEND=%s, falling back to memory", backend)
    return InMemoryRateLimiter()


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
