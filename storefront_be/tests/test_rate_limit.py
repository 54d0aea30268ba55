from datetime import datetime, timedelta

import pytest
from sqlalchemy import event

from conftest import FakeClock

from storefront.models.rate_limit import RateLimitBucket, RateLimitHit
from storefront.models.user import SessionLocal, engine
from storefront.utils.rate_limit import (
    InMemoryRateLimiter,
    SqlRateLimiter,
    build_rate_limiter,
    rate_limit_key,
)

DAY = 24 * 60 * 60
KEY = rate_limit_key(7, "return_request")


def test_key_format():
    assert KEY == "7:return_request"


def test_memory_limiter_allows_up_to_max():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)

    decisions = [limiter.allow(KEY, 5, DAY) for _ in range(5)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]

    clock.advance(60)
    denied = limiter.allow(KEY, 5, DAY)
    assert not denied.allowed
    assert denied.retry_after_seconds == DAY - 60


def test_memory_limiter_window_slides():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.allow(KEY, 2, 100)
    clock.advance(50)
    limiter.allow(KEY, 2, 100)
    assert not limiter.allow(KEY, 2, 100).allowed

    clock.advance(50)
    assert limiter.allow(KEY, 2, 100).allowed
    assert not limiter.allow(KEY, 2, 100).allowed


def test_denied_calls_do_not_extend_the_block():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.allow(KEY, 1, 100)
    for _ in range(10):
        clock.advance(5)
        assert not limiter.allow(KEY, 1, 100).allowed
    clock.advance(50)
    assert limiter.allow(KEY, 1, 100).allowed


def test_keys_are_independent():
    limiter = InMemoryRateLimiter(clock=FakeClock())
    limiter.allow("1:return_request", 1, DAY)
    assert not limiter.allow("1:return_request", 1, DAY).allowed
    assert limiter.allow("2:return_request", 1, DAY).allowed


def test_memory_sweep_drops_expired_keys():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.allow("a", 5, DAY)
    limiter.allow("a", 5, DAY)
    clock.advance(DAY // 2)
    limiter.allow("b", 5, DAY)
    clock.advance(DAY // 2)

    assert limiter.sweep(DAY) == 2
    assert limiter.sweep(DAY) == 0
    assert limiter.allow("b", 1, DAY).allowed is False


class DateClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def sql_limiter(db):
    clock = DateClock()
    return SqlRateLimiter(SessionLocal, clock=clock), clock


def test_sql_limiter_counts_in_database(db, sql_limiter):
    limiter, clock = sql_limiter
    for _ in range(5):
        assert limiter.allow(KEY, 5, DAY).allowed
        clock.advance(1)

    denied = limiter.allow(KEY, 5, DAY)
    assert not denied.allowed
    assert denied.retry_after_seconds == DAY - 5
    assert db.query(RateLimitHit).filter(RateLimitHit.key == KEY).count() == 5


def test_sql_limiter_window_and_sweep(db, sql_limiter):
    limiter, clock = sql_limiter
    limiter.allow(KEY, 1, DAY)
    clock.advance(DAY + 1)
    assert limiter.allow(KEY, 1, DAY).allowed

    assert limiter.sweep(DAY) == 1
    assert db.query(RateLimitHit).count() == 1


def test_build_rate_limiter_backends():
    assert isinstance(build_rate_limiter("memory"), InMemoryRateLimiter)
    assert isinstance(build_rate_limiter("database", SessionLocal), SqlRateLimiter)
    assert isinstance(build_rate_limiter("redis"), InMemoryRateLimiter)
    with pytest.raises(ValueError):
        build_rate_limiter("database")


def test_instances_sharing_a_database_share_the_limit(db):
    clock = DateClock()
    first = SqlRateLimiter(SessionLocal, clock=clock)
    second = SqlRateLimiter(SessionLocal, clock=clock)

    allowed = 0
    for limiter in (first, second) * 4:
        if limiter.allow(KEY, 5, DAY).allowed:
            allowed += 1
        clock.advance(1)

    assert allowed == 5
    assert db.query(RateLimitBucket).filter(RateLimitBucket.key == KEY).count() == 1
    assert db.query(RateLimitHit).filter(RateLimitHit.key == KEY).count() == 5


def test_bucket_created_elsewhere_is_reused(db, sql_limiter):
    limiter, clock = sql_limiter
    db.add(RateLimitBucket(key=KEY, created_at=clock()))
    db.commit()

    assert limiter.allow(KEY, 5, DAY).allowed
    assert db.query(RateLimitBucket).count() == 1


def test_bucket_row_is_locked_before_hits_are_counted(db, sql_limiter):
    limiter, _ = sql_limiter
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    try:
        limiter.allow(KEY, 5, DAY)
    finally:
        event.remove(engine, "before_cursor_execute", record)

    selects = [s for s in statements if s.lstrip().upper().startswith("SELECT")]
    bucket_reads = [i for i, s in enumerate(selects) if "rate_limit_buckets" in s]
    hit_reads = [i for i, s in enumerate(selects) if "FROM rate_limit_hits" in s]
    assert bucket_reads and hit_reads
    assert max(bucket_reads) < min(hit_reads)
