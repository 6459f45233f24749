"""Shared pytest fixtures for client portal tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from clientportal.config import GoogleConfig, PortalConfig, TelegramConfig  # noqa: E402
from clientportal.notifications.subscriptions import SubscriptionRegistry  # noqa: E402
from clientportal.providers.base import Entity  # noqa: E402

from helpers import FakeChannel, FakeClock, FakeRecordProvider  # noqa: E402

ACME = Entity(id="C1", display_name="Acme Corp", code="ACM", secret_token="ACME12345")
GLOBEX = Entity(id="C2", display_name="Globex", code="GLX", secret_token="GLOBEX999")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeRecordProvider(entities=[ACME, GLOBEX])


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def registry():
    return SubscriptionRegistry()


@pytest.fixture
def portal_config():
    """Config for in-process tests: poller off, local env."""
    return PortalConfig(
        telegram=TelegramConfig(bot_token="123:TEST", webhook_secret="hook-secret"),
        google=GoogleConfig(sheet_id="sheet-1", key_file="/tmp/key.json"),
        poller_enabled=False,
        app_env="test",
    )
