"""Subscription registry: entity id -> recipients to notify about it.

Invariant: no entity is ever kept with an empty recipient set.
"""

from __future__ import annotations

from clientportal.infra.locks import KeyedLocks
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import user_log_context

logger = get_logger(__name__)


class SubscriptionRegistry:
    """In-memory registry guarded by per-entity striped locks."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[str]] = {}
        self._locks = KeyedLocks()

    def subscribe(self, entity_id: str, recipient_id: str) -> None:
        """Idempotent add."""
        with self._locks.hold(entity_id):
            self._subscribers.setdefault(entity_id, set()).add(recipient_id)
        logger.info(
            "recipient subscribed",
            extra={"extra_fields": user_log_context(recipient_id, entity_id=entity_id)},
        )

    def unsubscribe(self, entity_id: str, recipient_id: str) -> bool:
        """Idempotent remove. Returns True if the recipient was subscribed."""
        with self._locks.hold(entity_id):
            removed = self._discard(entity_id, recipient_id)
        if removed:
            logger.info(
                "recipient unsubscribed",
                extra={"extra_fields": user_log_context(recipient_id, entity_id=entity_id)},
            )
        return removed

    def unsubscribe_all(self, recipient_id: str) -> int:
        """Remove the recipient from every entity. Returns how many were dropped."""
        removed = 0
        for entity_id in list(self._subscribers):
            with self._locks.hold(entity_id):
                if self._discard(entity_id, recipient_id):
                    removed += 1
        if removed:
            logger.info(
                "recipient unsubscribed from all entities",
                extra={"extra_fields": user_log_context(recipient_id, count=removed)},
            )
        return removed

    def recipients_for(self, entity_id: str) -> frozenset[str]:
        """Recipients of entity_id; empty when the entity is unknown."""
        with self._locks.hold(entity_id):
            return frozenset(self._subscribers.get(entity_id, ()))

    def is_subscribed(self, recipient_id: str, entity_id: str) -> bool:
        with self._locks.hold(entity_id):
            return recipient_id in self._subscribers.get(entity_id, ())

    def subscriptions_of(self, recipient_id: str) -> frozenset[str]:
        """Entity ids the recipient currently follows."""
        return frozenset(
            entity_id
            for entity_id in list(self._subscribers)
            if self.is_subscribed(recipient_id, entity_id)
        )

    def entities(self) -> frozenset[str]:
        """Every entity with at least one recipient."""
        return frozenset(self._subscribers)

    def _discard(self, entity_id: str, recipient_id: str) -> bool:
        # caller holds the entity's stripe
        recipients = self._subscribers.get(entity_id)
        if recipients is None or recipient_id not in recipients:
            return False
        recipients.discard(recipient_id)
        if not recipients:
            del self._subscribers[entity_id]
        return True
