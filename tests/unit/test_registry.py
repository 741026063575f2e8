"""Tests for the tracked wallet registry."""

from unittest.mock import Mock

import pytest

from wallet_monitor.core.models import RegistryDelta
from wallet_monitor.core.registry import AddressRegistry


WALLET_1 = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
WALLET_2 = "vines1vzrYbzLMRdu58ou5XTby4qAqVRLmqo36NKPTg"
WALLET_3 = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"


@pytest.mark.unit
class TestAddressRegistry:
    """Test add/remove semantics and delta publication."""

    def test_add_and_contains(self, registry):
        assert registry.add(WALLET_1) is True
        assert registry.contains(WALLET_1)
        assert WALLET_1 in registry
        assert len(registry) == 1

    def test_add_existing_returns_false(self, registry):
        registry.add(WALLET_1)
        assert registry.add(WALLET_1) is False
        assert len(registry) == 1

    def test_remove(self, registry):
        registry.add(WALLET_1)

        assert registry.remove(WALLET_1) is True
        assert registry.remove(WALLET_1) is False
        assert WALLET_1 not in registry

    def test_add_then_remove_leaves_no_subscription(self, registry):
        before = registry.snapshot()

        registry.add(WALLET_2)
        registry.remove(WALLET_2)

        assert registry.snapshot() == before

    def test_capacity(self):
        registry = AddressRegistry(max_addresses=2)

        assert registry.add(WALLET_1)
        assert registry.add(WALLET_2)
        assert registry.add(WALLET_3) is False
        assert registry.snapshot() == frozenset({WALLET_1, WALLET_2})

    def test_deltas_are_published_in_order(self, registry):
        listener = Mock()
        registry.add_listener(listener)

        registry.add(WALLET_1)
        registry.add(WALLET_1)
        registry.add(WALLET_2)
        registry.remove(WALLET_1)
        registry.remove(WALLET_3)

        deltas = [call.args[0] for call in listener.call_args_list]
        assert deltas == [
            RegistryDelta(added=frozenset({WALLET_1})),
            RegistryDelta(added=frozenset({WALLET_2})),
            RegistryDelta(removed=frozenset({WALLET_1})),
        ]

    def test_clear_emits_single_delta(self, registry):
        registry.add(WALLET_1)
        registry.add(WALLET_2)
        listener = Mock()
        registry.add_listener(listener)

        removed = registry.clear()

        assert removed == frozenset({WALLET_1, WALLET_2})
        assert len(registry) == 0
        listener.assert_called_once_with(RegistryDelta(removed=frozenset({WALLET_1, WALLET_2})))

        registry.clear()
        listener.assert_called_once()

    def test_failing_listener_does_not_block_others(self, registry):
        failing = Mock(side_effect=RuntimeError("listener down"))
        healthy = Mock()
        registry.add_listener(failing)
        registry.add_listener(healthy)

        assert registry.add(WALLET_1) is True
        healthy.assert_called_once()

    def test_snapshot_is_immutable_copy(self, registry):
        registry.add(WALLET_1)
        snapshot = registry.snapshot()

        registry.add(WALLET_2)

        assert snapshot == frozenset({WALLET_1})

    def test_empty_delta_is_falsy(self):
        assert not RegistryDelta()
        assert RegistryDelta(added=frozenset({WALLET_1}))
