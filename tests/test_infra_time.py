"""Tests for time utilities."""

from datetime import datetime, timedelta, timezone

import pytest

from clientportal.infra.time import is_expired, utc_now


class TestUtcNow:
    """Tests for utc_now()."""

    def test_returns_utc_datetime(self):
        now = utc_now()
        assert now.tzinfo == timezone.utc

    def test_returns_current_time(self):
        before = datetime.now(timezone.utc)
        now = utc_now()
        after = datetime.now(timezone.utc)

        assert before <= now <= after


class TestIsExpired:
    START = datetime(2025, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("ttl", [None, 0, -5])
    def test_no_ttl_never_expires(self, ttl):
        assert not is_expired(self.START, ttl, self.START + timedelta(days=365))

    def test_expires_at_boundary(self):
        assert not is_expired(self.START, 60, self.START + timedelta(seconds=59))
        assert is_expired(self.START, 60, self.START + timedelta(seconds=60))
