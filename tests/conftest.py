"""
Pytest fixtures and configuration for tests.
"""
from unittest.mock import patch

import pytest

from solana_relay_api.registry import SubscriptionRegistry
from solana_relay_api.relay import UpstreamRelay

from fakes import FakeClient, FakeConnector


# =============================================================================
# RELAY FIXTURES
# =============================================================================

@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def registry():
    return SubscriptionRegistry()


@pytest.fixture
def make_relay(registry):
    """Build a relay with zero backoff so reconnects happen on the next tick."""
    def _make(connector, **kwargs):
        kwargs.setdefault("base_delay", 0.0)
        kwargs.setdefault("max_delay", 0.0)
        kwargs.setdefault("max_attempts", 5)
        return UpstreamRelay(
            "wss://mainnet.helius-rpc.com/?api-key=test",
            registry=registry,
            connector=connector,
            **kwargs,
        )
    return _make


@pytest.fixture
def client_a():
    return FakeClient("a")


@pytest.fixture
def client_b():
    return FakeClient("b")


@pytest.fixture
def sample_account_notification():
    """Sample accountNotification push from Helius."""
    return {
        "jsonrpc": "2.0",
        "method": "accountNotification",
        "params": {
            "result": {
                "context": {"slot": 250000000},
                "value": {
                    "lamports": 1500000000,
                    "owner": "11111111111111111111111111111111",
                    "data": ["", "base64"],
                    "executable": False,
                    "rentEpoch": 18446744073709551615,
                },
            },
            "subscription": 23784,
        },
    }


# =============================================================================
# CONFIG MOCKS
# =============================================================================

@pytest.fixture
def mock_config():
    """Mock configuration for tests."""
    with patch('solana_relay_api.rpc_proxy.app_config') as mock:
        mock.HELIUS_API_KEY = "test-helius-key"
        mock.upstream_http_url = "https://mainnet.helius-rpc.com/?api-key=test-helius-key"
        mock.RPC_PROXY_TIMEOUT = 5.0
        yield mock
