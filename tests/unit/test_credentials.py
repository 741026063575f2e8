"""Tests for API key rotation."""

import pytest

from wallet_monitor.core.credentials import CredentialPool, mask_key
from wallet_monitor.core.errors import CredentialsExhausted


KEYS = ["key-alpha-0001", "key-bravo-0002", "key-charlie-03"]


@pytest.fixture
def pool(fake_clock):
    return CredentialPool(
        KEYS,
        max_calls_per_rotation=3,
        rotation_interval_seconds=900,
        cooldown_seconds=60,
        clock=fake_clock
    )


def _call(pool):
    credential = pool.active_credential()
    pool.record_call()
    return credential.key


@pytest.mark.unit
class TestCredentialPool:
    """Test proactive and reactive rotation."""

    def test_requires_keys(self):
        with pytest.raises(ValueError):
            CredentialPool([])

    def test_round_robin_by_call_count(self, pool):
        keys = [_call(pool) for _ in range(9)]

        # Each key serves exactly T=3 calls before the next takes over
        assert keys == [KEYS[0]] * 3 + [KEYS[1]] * 3 + [KEYS[2]] * 3
        assert _call(pool) == KEYS[0]

    def test_interval_rotation(self, pool, fake_clock):
        assert _call(pool) == KEYS[0]

        fake_clock.advance(901)

        assert _call(pool) == KEYS[1]
        assert pool.active.call_count == 1

    def test_rate_limit_puts_key_in_cooldown(self, pool, fake_clock):
        credential = pool.active_credential()
        pool.rotate("rate limited", cooldown=True, credential=credential)

        assert pool.active.key == KEYS[1]
        assert credential.is_cooling(fake_clock())

        # Cooling key is skipped when the rotation wraps around
        keys = [_call(pool) for _ in range(7)]
        assert KEYS[0] not in keys

    def test_rotation_is_idempotent(self, pool):
        credential = pool.active_credential()

        pool.rotate("rate limited", cooldown=True, credential=credential)
        pool.rotate("rate limited", cooldown=True, credential=credential)

        # The second report only refreshes the cooldown of a no longer active key
        assert pool.active.key == KEYS[1]
        assert pool.stats['rotations'] == 1

    def test_all_keys_cooling_fails_fast(self, pool, fake_clock):
        for _ in KEYS:
            pool.rotate("rate limited", cooldown=True)

        assert pool.is_exhausted
        assert pool.status()['degraded'] is True

        with pytest.raises(CredentialsExhausted) as exc_info:
            pool.active_credential()
        assert exc_info.value.retry_at == pytest.approx(fake_clock() + 60)

    def test_recovers_after_cooldown(self, pool, fake_clock):
        for _ in KEYS:
            pool.rotate("rate limited", cooldown=True)

        fake_clock.advance(61)

        assert not pool.is_exhausted
        assert pool.active_credential().key in KEYS

    def test_seconds_until_available(self, pool, fake_clock):
        assert pool.seconds_until_available() == 0.0

        pool.rotate("rate limited", cooldown=True)
        fake_clock.advance(10)
        pool.rotate("rate limited", cooldown=True)
        pool.rotate("rate limited", cooldown=True)

        # Earliest cooldown ends 60s after the first rotation
        assert pool.seconds_until_available() == pytest.approx(50)

        fake_clock.advance(50)
        assert pool.seconds_until_available() == 0.0

    def test_single_key_rotation_resets_window(self, fake_clock):
        pool = CredentialPool(["only-key-000001"], max_calls_per_rotation=2, clock=fake_clock)

        keys = [_call(pool) for _ in range(5)]

        assert keys == ["only-key-000001"] * 5
        assert pool.active.call_count == 1

    def test_status_masks_keys(self, pool):
        status = pool.status()

        assert status['total_keys'] == 3
        assert status['available_keys'] == 3
        assert status['active_key'] == "key-alph..."
        assert "key-alpha-0001" not in str(status)

    def test_mask_key(self):
        assert mask_key("abcdefghijkl") == "abcdefgh..."
