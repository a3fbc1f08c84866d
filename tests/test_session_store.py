"""Unit tests for SessionStore.

Tests for:
- Token issuance, entropy and collision retry
- Lookup, lazy expiry and corrupt records
- Touch (sliding refresh) and destroy semantics
- Timeouts and backend failures surfacing as StoreUnavailable
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sessionauth.service.errors import (
    CollisionExhausted,
    StoreUnavailable,
    ValidationError,
)
from sessionauth.service.sessions import SessionStore
from sessionauth.storage.errors import BackendUnavailable
from sessionauth.storage.kv import MemoryBackend
from sessionauth.storage.models import Session


class SlowBackend(MemoryBackend):
    """Backend whose reads hang past any reasonable timeout."""

    async def get(self, key):
        await asyncio.sleep(5)
        return await super().get(key)


class WriteThenHangBackend(MemoryBackend):
    """Applies the write, then stalls as if the reply was lost."""

    async def set(self, key, value, ttl, *, only_if_absent=False):
        await super().set(key, value, ttl, only_if_absent=only_if_absent)
        await asyncio.sleep(5)
        return True


class DownBackend(MemoryBackend):
    async def get(self, key):
        raise BackendUnavailable("connection refused")

    async def set(self, key, value, ttl, *, only_if_absent=False):
        raise BackendUnavailable("connection refused")


class RacingBackend(MemoryBackend):
    """Loses the first compare-and-set as if another request refreshed first."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.cas_calls = 0

    async def compare_and_set(self, key, expected, value, ttl):
        self.cas_calls += 1
        if self.cas_calls == 1:
            return False
        return await super().compare_and_set(key, expected, value, ttl)


def _dt(epoch):
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def sequence_factory(*tokens):
    remaining = list(tokens)
    return lambda: remaining.pop(0)


class TestCreate:
    async def test_create_returns_token_and_expiry(self, store, clock):
        issued = await store.create("user-1", 60)

        assert issued.token
        assert issued.expires_at.timestamp() == pytest.approx(clock() + 60)

    async def test_token_has_at_least_128_bits(self, store):
        issued = await store.create("user-1", 60)

        # token_urlsafe encodes 6 bits per character
        assert len(issued.token) * 6 >= 128

    async def test_tokens_are_unique(self, store):
        issued = await asyncio.gather(*(store.create("user-1", 60) for _ in range(50)))

        assert len({i.token for i in issued}) == 50

    async def test_token_not_stored_in_clear(self, store, backend):
        issued = await store.create("user-1", 60)

        assert await backend.get(store.key_prefix + issued.token) is None
        assert await backend.get(store._key(issued.token)) is not None

    async def test_record_carries_user_and_timestamps(self, store, backend, clock):
        issued = await store.create("user-1", 60)

        record = Session.from_record(await backend.get(store._key(issued.token)))
        assert record.user_id == "user-1"
        assert record.created_at.timestamp() == pytest.approx(clock())
        assert record.expires_at - record.created_at == timedelta(seconds=60)

    async def test_collision_retries_with_fresh_token(self, backend, clock):
        first, second = "A" * 43, "B" * 43
        store = SessionStore(
            backend, clock=clock, token_factory=sequence_factory(first, first, second)
        )

        issued_a = await store.create("user-1", 60)
        issued_b = await store.create("user-2", 60)

        assert issued_a.token == first
        assert issued_b.token == second
        # The original owner keeps its token
        assert (await store.get(first)).user_id == "user-1"

    async def test_collisions_exhausted(self, backend, clock):
        store = SessionStore(
            backend, clock=clock, max_token_attempts=3, token_factory=lambda: "C" * 43
        )
        await store.create("user-1", 60)

        with pytest.raises(CollisionExhausted):
            await store.create("user-2", 60)
        assert (await store.get("C" * 43)).user_id == "user-1"

    async def test_rejects_non_positive_ttl(self, store):
        with pytest.raises(ValidationError):
            await store.create("user-1", 0)

    async def test_rejects_low_entropy_configuration(self, backend):
        with pytest.raises(ValueError):
            SessionStore(backend, token_bytes=8)


class TestGet:
    async def test_get_returns_session(self, store):
        issued = await store.create("user-1", 60)

        session = await store.get(issued.token)

        assert session is not None
        assert session.user_id == "user-1"

    async def test_get_unknown_token(self, store):
        assert await store.get("unknown-token") is None

    @pytest.mark.parametrize("token", ["", None, "has spaces", "x" * 600, "semi;colon"])
    async def test_malformed_tokens_are_not_found(self, token, clock):
        backend = SlowBackend(clock=clock)
        store = SessionStore(backend, clock=clock, operation_timeout=0.01)

        # Rejected before any backend round trip, so the slow backend never times out
        assert await store.get(token) is None

    async def test_expired_after_ttl(self, store, clock):
        issued = await store.create("user-1", 60)
        clock.advance(61)

        assert await store.get(issued.token) is None

    async def test_live_just_before_ttl(self, store, clock):
        issued = await store.create("user-1", 60)
        clock.advance(59)

        assert await store.get(issued.token) is not None

    async def test_lazy_expiry_deletes_stale_record(self, store, backend, clock):
        # Backend TTL outlives the record's own expiry, e.g. clock skew between nodes
        token = "D" * 43
        stale = Session(
            user_id="user-1",
            created_at=_dt(clock() - 120),
            expires_at=_dt(clock() - 60),
        )
        await backend.set(store._key(token), stale.to_record(), 3600)

        assert await store.get(token) is None
        assert await backend.get(store._key(token)) is None

    async def test_corrupt_record_is_dropped(self, store, backend):
        token = "E" * 43
        await backend.set(store._key(token), "{not json", 3600)

        assert await store.get(token) is None
        assert await backend.get(store._key(token)) is None

    @pytest.mark.parametrize("expires_at", ["Infinity", "NaN", "1e300"])
    async def test_out_of_range_timestamp_is_dropped(self, store, backend, expires_at):
        token = "G" * 43
        raw = '{"created_at":0,"expires_at":%s,"user_id":"user-1"}' % expires_at
        await backend.set(store._key(token), raw, 3600)

        assert await store.get(token) is None
        assert await backend.get(store._key(token)) is None


class TestTouch:
    async def test_touch_extends_past_original_ttl(self, store, clock):
        issued = await store.create("user-1", 10)
        clock.advance(8)

        assert await store.touch(issued.token, 10) is True
        clock.advance(8)  # 16s after creation, beyond the original 10s

        session = await store.get(issued.token)
        assert session is not None
        assert session.expires_at.timestamp() == pytest.approx(clock() + 2)

    async def test_touch_keeps_identity_and_creation_time(self, store, clock):
        issued = await store.create("user-1", 10)
        before = await store.get(issued.token)
        clock.advance(5)

        await store.touch(issued.token, 100)
        after = await store.get(issued.token)

        assert after.user_id == before.user_id
        assert after.created_at == before.created_at

    async def test_touch_absent_token(self, store):
        assert await store.touch("missing-token", 10) is False

    async def test_touch_expired_token(self, store, clock):
        issued = await store.create("user-1", 10)
        clock.advance(11)

        assert await store.touch(issued.token, 10) is False
        assert await store.get(issued.token) is None

    async def test_touch_retries_after_lost_race(self, clock):
        backend = RacingBackend(clock=clock)
        store = SessionStore(backend, clock=clock)
        issued = await store.create("user-1", 10)

        assert await store.touch(issued.token, 100) is True
        assert backend.cas_calls == 2
        clock.advance(50)
        assert await store.get(issued.token) is not None

    async def test_touch_rejects_non_positive_ttl(self, store):
        issued = await store.create("user-1", 10)

        with pytest.raises(ValidationError):
            await store.touch(issued.token, -1)


class TestDestroy:
    async def test_destroy_then_not_found(self, store):
        issued = await store.create("user-1", 60)

        assert await store.destroy(issued.token) is True
        assert await store.get(issued.token) is None

    async def test_destroy_is_idempotent(self, store):
        issued = await store.create("user-1", 60)
        await store.destroy(issued.token)

        assert await store.destroy(issued.token) is False
        assert await store.destroy("never-issued") is False
        assert await store.destroy("") is False

    async def test_destroy_only_affects_its_token(self, store):
        keep = await store.create("user-1", 60)
        drop = await store.create("user-1", 60)

        await store.destroy(drop.token)

        assert await store.get(keep.token) is not None


class TestBackendFailures:
    async def test_timeout_raises_store_unavailable(self, clock):
        store = SessionStore(SlowBackend(clock=clock), clock=clock, operation_timeout=0.01)

        with pytest.raises(StoreUnavailable) as excinfo:
            await store.get("F" * 43)
        assert excinfo.value.retryable is True

    async def test_backend_unavailable_raises_store_unavailable(self, clock):
        store = SessionStore(DownBackend(clock=clock), clock=clock)

        with pytest.raises(StoreUnavailable):
            await store.get("F" * 43)
        with pytest.raises(StoreUnavailable):
            await store.create("user-1", 60)

    async def test_create_timeout_rolls_back_landed_write(self, clock):
        backend = WriteThenHangBackend(clock=clock)
        store = SessionStore(backend, clock=clock, operation_timeout=0.01)

        with pytest.raises(StoreUnavailable):
            await store.create("user-1", 60)
        assert len(backend) == 0
