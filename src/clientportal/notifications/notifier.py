"""Fan-out delivery of change notifications.

Security: NEVER log recipient ids or message text. Only hashes and lengths.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from clientportal.errors import DeliveryError
from clientportal.notifications.detector import ChangeEvent, ChangeKind
from clientportal.notifications.subscriptions import SubscriptionRegistry
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import user_log_context
from clientportal.providers.base import MessagingChannel
from clientportal.templates import render, status_emoji

logger = get_logger(__name__)

DEFAULT_MAX_WORKERS = 4

# (substring of lowered new status, milestone template) - first match wins
MILESTONES: list[tuple[str, str]] = [
    ("progress", "milestone_progress"),
    ("review", "milestone_review"),
    ("completed", "milestone_completed"),
]


def milestone_for(status: str | None) -> str | None:
    """Template key of the milestone remark for a new status, if any."""
    normalized = (status or "").lower()
    for needle, template_key in MILESTONES:
        if needle in normalized:
            return template_key
    return None


def render_change(event: ChangeEvent) -> str:
    """Render the notification text for one change event."""
    record = event.record
    if event.kind is ChangeKind.NEW:
        lines = [
            render(
                "job_created",
                {"title": record.title, "job_id": record.id, "status": record.status or "Pending"},
            )
        ]
        if record.deadline:
            lines.append(render("line_deadline", {"deadline": record.deadline}))
        if record.description:
            lines.append("")
            lines.append(render("line_description", {"description": record.description}))
        return "\n".join(lines)

    if event.kind is ChangeKind.STATUS_CHANGED:
        text = render(
            "job_status_changed",
            {
                "emoji": status_emoji(record.status),
                "title": record.title,
                "job_id": record.id,
                "old_status": event.old_status or "",
                "new_status": record.status,
            },
        )
        milestone = milestone_for(record.status)
        if milestone:
            text += "\n\n" + render(milestone)
        return text

    return render("job_removed", {"title": record.title, "job_id": record.id})


@dataclass
class DeliveryReport:
    """Outcome of one fan-out."""

    delivered: list[str] = field(default_factory=list)
    transient: list[str] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.transient) + len(self.unreachable)


class Notifier:
    """Delivers one message per change to every subscribed recipient.

    Each recipient is isolated: a failure for one never blocks the others.
    A permanently unreachable recipient is unsubscribed from everything;
    transient failures are logged and dropped (no retry in this cycle).
    """

    def __init__(
        self,
        channel: MessagingChannel,
        registry: SubscriptionRegistry,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self._channel = channel
        self._registry = registry
        self._max_workers = max(1, max_workers)

    def deliver(self, entity_id: str, event: ChangeEvent) -> DeliveryReport:
        report = DeliveryReport()
        recipients = sorted(self._registry.recipients_for(entity_id))
        if not recipients:
            return report

        text = render_change(event)
        workers = min(self._max_workers, len(recipients))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") as pool:
            futures = {
                recipient: pool.submit(
                    contextvars.copy_context().run, self._send_one, recipient, text
                )
                for recipient in recipients
            }

        for recipient, future in futures.items():
            outcome = future.result()
            if outcome == "delivered":
                report.delivered.append(recipient)
            elif outcome == "unreachable":
                report.unreachable.append(recipient)
            else:
                report.transient.append(recipient)

        # self-heal after the fan-out so no send races the registry update
        for recipient in report.unreachable:
            self._registry.unsubscribe_all(recipient)

        logger.info(
            "change notification fanned out",
            extra={
                "extra_fields": {
                    "entity_id": entity_id,
                    "kind": event.kind.value,
                    "delivered": len(report.delivered),
                    "transient": len(report.transient),
                    "unreachable": len(report.unreachable),
                }
            },
        )
        return report

    def _send_one(self, recipient: str, text: str) -> str:
        try:
            self._channel.send_message(recipient, text)
            return "delivered"
        except DeliveryError as e:
            if e.is_permanent:
                logger.warning(
                    "recipient unreachable, unsubscribing",
                    extra={"extra_fields": user_log_context(recipient, status_code=e.status_code)},
                )
                return "unreachable"
            logger.warning(
                "notification delivery failed",
                extra={"extra_fields": user_log_context(recipient, status_code=e.status_code)},
            )
            return "transient"
        except Exception:
            logger.exception(
                "notification delivery crashed",
                extra={"extra_fields": user_log_context(recipient, text_len=len(text))},
            )
            return "transient"
