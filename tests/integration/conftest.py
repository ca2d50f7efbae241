"""
Pytest configuration for live relay tests.

Everything here talks to the real Helius endpoints and needs HELIUS_API_KEY.
Without a key the tests are collected but skipped.
"""

import pytest

from solana_relay_api.config import config as app_config


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (runs against real services)"
    )


def pytest_collection_modifyitems(config, items):
    """Mark live tests, and skip them when no Helius key is configured."""
    skip_live = pytest.mark.skip(reason="HELIUS_API_KEY not set")
    for item in items:
        if "integration" not in str(item.fspath):
            continue
        item.add_marker(pytest.mark.integration)
        if not app_config.HELIUS_API_KEY:
            item.add_marker(skip_live)
