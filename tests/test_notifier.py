"""Tests for notification fan-out and registry self-healing."""

from unittest.mock import patch

import pytest

from clientportal.notifications.detector import ChangeEvent, ChangeKind
from clientportal.notifications.notifier import Notifier, milestone_for, render_change

from helpers import LogRecorder, make_record, permanent_failure, transient_failure


def _status_event(old="Pending", new="In Progress", **kwargs):
    return ChangeEvent(
        kind=ChangeKind.STATUS_CHANGED,
        record=make_record("J1", status=new, title="Website", **kwargs),
        old_status=old,
    )


class TestRendering:
    """One message per change, built from templates."""

    def test_new_record_message(self):
        event = ChangeEvent(
            kind=ChangeKind.NEW,
            record=make_record("J7", status="", title="Logo", deadline="2025-03-01", description="Vector logo"),
        )

        text = render_change(event)

        assert "New Job Created" in text
        assert "Logo" in text and "J7" in text
        assert "Status: Pending" in text
        assert "Deadline: 2025-03-01" in text
        assert "Vector logo" in text

    def test_new_record_omits_missing_optionals(self):
        text = render_change(ChangeEvent(kind=ChangeKind.NEW, record=make_record("J7")))
        assert "Deadline" not in text
        assert "📝" not in text

    def test_status_change_message(self):
        text = render_change(_status_event())

        assert "Pending → <b>In Progress</b>" in text
        assert "Work has begun" in text

    @pytest.mark.parametrize(
        "status, template",
        [
            ("In Progress", "milestone_progress"),
            ("Ready for Review", "milestone_review"),
            ("COMPLETED", "milestone_completed"),
            ("On Hold", None),
            ("", None),
        ],
    )
    def test_milestone_by_substring(self, status, template):
        assert milestone_for(status) == template

    def test_removed_message(self):
        text = render_change(ChangeEvent(kind=ChangeKind.REMOVED, record=make_record("J3", title="Old job")))
        assert "Job Removed" in text
        assert "Old job" in text

    def test_record_values_are_escaped(self):
        text = render_change(_status_event(new="<script>"))
        assert "<script>" not in text
        assert "&lt;script&gt;" in text


class TestFanOut:
    """Delivery to every subscribed recipient, isolated per recipient."""

    def test_delivers_to_every_recipient(self, channel, registry):
        for user in ("u1", "u2", "u3"):
            registry.subscribe("C1", user)
        notifier = Notifier(channel, registry, max_workers=2)

        report = notifier.deliver("C1", _status_event())

        assert sorted(channel.recipients()) == ["u1", "u2", "u3"]
        assert sorted(report.delivered) == ["u1", "u2", "u3"]
        assert report.attempted == 3

    def test_no_recipients_sends_nothing(self, channel, registry):
        report = Notifier(channel, registry).deliver("C1", _status_event())

        assert channel.sent == []
        assert report.attempted == 0

    def test_only_entity_subscribers_are_notified(self, channel, registry):
        registry.subscribe("C1", "u1")
        registry.subscribe("C2", "u2")

        Notifier(channel, registry).deliver("C1", _status_event())

        assert channel.recipients() == ["u1"]

    def test_permanent_failure_unsubscribes_everywhere(self, channel, registry):
        registry.subscribe("C1", "u1")
        registry.subscribe("C1", "blocked")
        registry.subscribe("C2", "blocked")
        channel.failures["blocked"] = permanent_failure()

        report = Notifier(channel, registry).deliver("C1", _status_event())

        assert report.delivered == ["u1"]
        assert report.unreachable == ["blocked"]
        assert registry.subscriptions_of("blocked") == frozenset()
        assert registry.entities() == frozenset({"C1"})

    def test_transient_failure_keeps_subscription(self, channel, registry):
        registry.subscribe("C1", "u1")
        registry.subscribe("C1", "flaky")
        channel.failures["flaky"] = transient_failure()

        report = Notifier(channel, registry).deliver("C1", _status_event())

        assert report.transient == ["flaky"]
        assert report.delivered == ["u1"]
        assert registry.is_subscribed("flaky", "C1")

    def test_unexpected_error_is_isolated(self, channel, registry):
        registry.subscribe("C1", "u1")
        registry.subscribe("C1", "broken")
        channel.failures["broken"] = RuntimeError("socket exploded")

        report = Notifier(channel, registry).deliver("C1", _status_event())

        assert report.delivered == ["u1"]
        assert report.transient == ["broken"]
        assert registry.is_subscribed("broken", "C1")

    def test_recipient_ids_never_logged(self, channel, registry):
        registry.subscribe("C1", "chat-555")
        registry.subscribe("C1", "chat-666")
        channel.failures["chat-666"] = permanent_failure()
        recorder = LogRecorder()

        with patch("clientportal.notifications.notifier.logger", recorder):
            Notifier(channel, registry).deliver("C1", _status_event())

        content = recorder.get_all_logged_content()
        assert "chat-555" not in content
        assert "chat-666" not in content
        assert "Website" not in content
        assert recorder.has_extra_field("user_hash")
