from __future__ import annotations

import pytest

from intake.core.fnv import fnv1a64_hex
from intake.guards.dedupe import DEDUPE_STATE_SCOPE, DedupGuard
from intake.state.backends import FileStateBackend
from intake.state.store import StateStore


def test_fnv1a64_matches_reference_vectors():
    assert fnv1a64_hex("") == "cbf29ce484222325"
    assert fnv1a64_hex("a") == "af63dc4c8601ec8c"
    assert fnv1a64_hex("foobar") == "85944171f73967e8"


def test_fingerprint_ignores_surrounding_whitespace():
    assert DedupGuard.fingerprint("  delivery-1 ") == DedupGuard.fingerprint("delivery-1")
    assert len(DedupGuard.fingerprint("delivery-1")) == 16


@pytest.mark.anyio
async def test_identity_is_duplicate_only_inside_window(memory_store, clock):
    guard = DedupGuard(memory_store, clock=clock)

    assert await guard.is_duplicate("github:delivery-1", 60_000) is False
    clock.advance(59_999)
    assert await guard.is_duplicate("github:delivery-1", 60_000) is True
    clock.advance(1)
    assert await guard.is_duplicate("github:delivery-1", 60_000) is False


@pytest.mark.anyio
async def test_duplicate_sighting_does_not_extend_window(memory_store, clock):
    guard = DedupGuard(memory_store, clock=clock)

    assert await guard.is_duplicate("evt", 1_000) is False
    clock.advance(900)
    assert await guard.is_duplicate("evt", 1_000) is True
    clock.advance(100)
    assert await guard.is_duplicate("evt", 1_000) is False


@pytest.mark.anyio
async def test_blank_identity_is_never_duplicate(memory_store, clock):
    guard = DedupGuard(memory_store, clock=clock)

    assert await guard.is_duplicate("   ", 60_000) is False
    assert await guard.is_duplicate("   ", 60_000) is False
    assert memory_store.stats()["scopes"] == {}


@pytest.mark.anyio
async def test_forget_allows_redelivery(memory_store, clock):
    guard = DedupGuard(memory_store, clock=clock)

    assert await guard.is_duplicate("evt", 60_000) is False
    await guard.forget("evt")
    assert await guard.is_duplicate("evt", 60_000) is False
    assert await guard.is_duplicate("evt", 60_000) is True


@pytest.mark.anyio
async def test_records_are_bounded(memory_store, clock):
    guard = DedupGuard(memory_store, max_entries=2, clock=clock)

    for identity in ("a", "b", "c"):
        assert await guard.is_duplicate(identity, 60_000) is False
        clock.advance(1)

    assert memory_store.stats()["scopes"] == {DEDUPE_STATE_SCOPE: 2}
    assert await guard.is_duplicate("a", 60_000) is False


@pytest.mark.anyio
async def test_storage_outage_keeps_the_in_memory_view(failing_backend, clock):
    guard = DedupGuard(StateStore(failing_backend, clock=clock), clock=clock)

    assert await guard.is_duplicate("evt", 60_000) is False
    assert await guard.is_duplicate("evt", 60_000) is True


@pytest.mark.anyio
async def test_file_backed_records_survive_restart(tmp_path, clock):
    path = tmp_path / "runtime-state.json"
    first = DedupGuard(StateStore(FileStateBackend(path), clock=clock), clock=clock)
    assert await first.is_duplicate("github:delivery-7", 300_000) is False

    clock.advance(1_000)
    second = DedupGuard(StateStore(FileStateBackend(path), clock=clock), clock=clock)
    assert await second.is_duplicate("github:delivery-7", 300_000) is True
