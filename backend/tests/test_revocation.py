"""Tests for the token revocation store and sweeper."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from app.services.errors import StoreUnavailableError
from app.services.revocation import (
    DisabledRevocationStore,
    InMemoryRevocationBackend,
    RevocationReason,
    RevocationStore,
    RevocationSweeper,
)

NOW = datetime(2026, 5, 4, 10, 0, tzinfo=UTC)


class BrokenBackend:
    """Backend whose every call fails like an unreachable database."""

    async def insert(self, entry):
        raise StoreUnavailableError("connection refused")

    async def contains_unexpired(self, token_id, now):
        raise StoreUnavailableError("connection refused")

    async def delete_expired(self, now):
        raise StoreUnavailableError("connection refused")


def make_store(backend=None, policy="fail_open") -> RevocationStore:
    if backend is None:
        backend = InMemoryRevocationBackend()
    return RevocationStore(backend, policy, clock=lambda: NOW)


class TestAdd:
    @pytest.mark.asyncio
    async def test_revoked_until_expiry(self):
        store = make_store()
        await store.add("jti-1", "user-1", "session-1", NOW + timedelta(minutes=5))

        assert await store.is_revoked("jti-1") is True
        assert await store.is_revoked("jti-2") is False

    @pytest.mark.asyncio
    async def test_expired_entry_is_not_revoked(self):
        store = make_store()
        await store.add("jti-1", "user-1", "session-1", NOW - timedelta(seconds=1))

        assert await store.is_revoked("jti-1") is False

    @pytest.mark.asyncio
    async def test_duplicate_add_keeps_first_entry(self):
        backend = InMemoryRevocationBackend()
        store = make_store(backend)
        first = await store.add(
            "jti-1", "user-1", "session-1", NOW + timedelta(hours=1), RevocationReason.LOGOUT
        )
        second = await store.add(
            "jti-1", "user-1", "session-1", NOW + timedelta(hours=9), RevocationReason.SECURITY
        )

        assert first is True
        assert second is False

        entry = backend.get("jti-1")
        assert entry.reason == RevocationReason.LOGOUT
        assert entry.expires_at == NOW + timedelta(hours=1)
        assert entry.created_at == NOW
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_concurrent_adds_are_idempotent(self):
        backend = InMemoryRevocationBackend()
        store = make_store(backend)
        results = await asyncio.gather(
            *(store.add("jti-1", "u", "s", NOW + timedelta(hours=1)) for _ in range(20))
        )
        assert results.count(True) == 1
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_add_failure_propagates(self):
        with pytest.raises(StoreUnavailableError):
            await make_store(BrokenBackend()).add("jti-1", "u", "s", NOW)


class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_fail_open_accepts(self):
        store = make_store(BrokenBackend(), "fail_open")
        assert await store.is_revoked("jti-1") is False

    @pytest.mark.asyncio
    async def test_fail_closed_raises(self):
        store = make_store(BrokenBackend(), "fail_closed")
        with pytest.raises(StoreUnavailableError):
            await store.is_revoked("jti-1")


class TestSweep:
    @pytest.mark.asyncio
    async def test_removes_only_expired(self):
        backend = InMemoryRevocationBackend()
        store = make_store(backend)
        await store.add("past", "u", "s", NOW - timedelta(minutes=1))
        await store.add("boundary", "u", "s", NOW)
        await store.add("future", "u", "s", NOW + timedelta(minutes=1))

        removed = await store.sweep(NOW)

        assert removed == 2
        assert backend.get("past") is None
        assert backend.get("boundary") is None
        assert backend.get("future") is not None
        assert await store.is_revoked("future") is True

    @pytest.mark.asyncio
    async def test_sweep_defaults_to_clock(self):
        store = make_store()
        await store.add("past", "u", "s", NOW - timedelta(minutes=1))
        assert await store.sweep() == 1


class TestDisabledRevocation:
    @pytest.mark.asyncio
    async def test_nothing_is_ever_revoked(self):
        store = DisabledRevocationStore()
        await store.add("jti-1", "u", "s", NOW + timedelta(hours=1))

        assert await store.is_revoked("jti-1") is False
        assert await store.sweep(NOW) == 0


class TestSweeper:
    @pytest.mark.asyncio
    async def test_run_once_reports_counts(self):
        store = make_store()
        await store.add("past", "u", "s", NOW - timedelta(minutes=1))

        async def purge_states(now):
            return 3

        sweeper = RevocationSweeper(
            {"revoked_tokens": store.sweep, "oauth_states": purge_states}, clock=lambda: NOW
        )

        assert await sweeper.run_once() == {"revoked_tokens": 1, "oauth_states": 3}

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_others(self):
        async def broken(now):
            raise StoreUnavailableError("down")

        async def fine(now):
            return 1

        sweeper = RevocationSweeper({"broken": broken, "fine": fine})

        assert await sweeper.run_once() == {"fine": 1}

    @pytest.mark.asyncio
    async def test_job_timeout(self):
        async def slow(now):
            await asyncio.sleep(10)
            return 1

        sweeper = RevocationSweeper({"slow": slow}, timeout_seconds=0.05)

        assert await sweeper.run_once() == {}

    @pytest.mark.asyncio
    async def test_single_flight(self):
        started = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def blocking(now):
            nonlocal calls
            calls += 1
            started.set()
            await release.wait()
            return 0

        sweeper = RevocationSweeper({"blocking": blocking}, timeout_seconds=5)
        first = asyncio.create_task(sweeper.run_once())
        await started.wait()

        assert await sweeper.run_once() is None

        release.set()
        assert await first == {"blocking": 0}
        assert calls == 1

    @pytest.mark.asyncio
    async def test_background_loop_runs_and_stops(self):
        runs = 0

        async def job(now):
            nonlocal runs
            runs += 1
            return 0

        sweeper = RevocationSweeper({"job": job}, interval_seconds=0.01)
        sweeper.start()
        await asyncio.sleep(0.1)
        await sweeper.stop()

        assert runs >= 1
        assert sweeper.running is False
