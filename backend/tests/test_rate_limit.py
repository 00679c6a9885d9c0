from __future__ import annotations

import pytest

from intake.guards.rate_limit import (
    RATE_LIMIT_STATE_SCOPE,
    RateLimiter,
    build_command_rate_limit_key,
    normalize_rate_limit_part,
)
from intake.state.store import StateStore


@pytest.mark.anyio
async def test_fixed_window_allows_max_count_then_resets(memory_store, clock):
    limiter = RateLimiter(memory_store, clock=clock)
    key = "github:acme/api:pr:7:user:dev:cmd:review"

    results = [await limiter.is_rate_limited(key, 3, 60_000) for _ in range(4)]
    assert results == [False, False, False, True]

    clock.advance(60_000)
    assert await limiter.is_rate_limited(key, 3, 60_000) is False


@pytest.mark.anyio
async def test_window_is_not_extended_by_later_calls(memory_store, clock):
    limiter = RateLimiter(memory_store, clock=clock)

    assert await limiter.is_rate_limited("k", 1, 10_000) is False
    clock.advance(9_000)
    assert await limiter.is_rate_limited("k", 1, 10_000) is True

    record = await memory_store.load(RATE_LIMIT_STATE_SCOPE, "k")
    assert record["windowExpiresAt"] - record["windowStartedAt"] == 10_000
    assert record["count"] == 2

    clock.advance(1_000)
    assert await limiter.is_rate_limited("k", 1, 10_000) is False


@pytest.mark.anyio
async def test_keys_are_counted_independently(memory_store, clock):
    limiter = RateLimiter(memory_store, clock=clock)

    assert await limiter.is_rate_limited("alice", 1, 60_000) is False
    assert await limiter.is_rate_limited("bob", 1, 60_000) is False
    assert await limiter.is_rate_limited("alice", 1, 60_000) is True


@pytest.mark.anyio
async def test_non_positive_limit_is_treated_as_one(memory_store, clock):
    limiter = RateLimiter(memory_store, clock=clock)

    assert await limiter.is_rate_limited("k", 0, 60_000) is False
    assert await limiter.is_rate_limited("k", 0, 60_000) is True


@pytest.mark.anyio
async def test_storage_outage_does_not_limit_callers(failing_backend, clock):
    limiter = RateLimiter(StateStore(failing_backend, clock=clock), clock=clock)

    results = [await limiter.is_rate_limited("k", 3, 60_000) for _ in range(4)]

    assert results == [False, False, False, True]
    assert failing_backend.persist_calls == 4


def test_rate_limit_part_is_normalized():
    assert normalize_rate_limit_part("  Acme Corp!! ", "x") == "acme-corp-"
    assert normalize_rate_limit_part(None, "unknown") == "unknown"
    assert normalize_rate_limit_part("", "unknown") == "unknown"
    assert len(normalize_rate_limit_part("a" * 100, "x")) == 64


def test_command_key_includes_every_component():
    key = build_command_rate_limit_key(
        platform="github",
        owner="Acme",
        repo="API",
        number=42,
        user="Dev.One",
        command="Review",
    )
    assert key == "github:acme/api:pr:42:user:dev.one:cmd:review"

    fallback = build_command_rate_limit_key(
        platform="gitlab", owner=None, repo=None, number=1, user=None, command=None
    )
    assert fallback == (
        "gitlab:unknown-owner/unknown-repo:pr:1:user:unknown-user:cmd:unknown-command"
    )
