"""Portal facade: session lifecycle coupled to notification subscriptions.

Signing in subscribes the user to their entity. Signing out, or the session
expiring, removes every subscription the user holds.
"""

from __future__ import annotations

from dataclasses import dataclass

from clientportal.core.sessions import SessionInfo, SessionStore
from clientportal.notifications.subscriptions import SubscriptionRegistry


@dataclass(frozen=True)
class NotificationStatus:
    session: SessionInfo
    subscribed: bool
    subscriptions: frozenset[str]


class Portal:
    def __init__(self, sessions: SessionStore, registry: SubscriptionRegistry) -> None:
        self.sessions = sessions
        self.registry = registry
        sessions.on_expired = registry.unsubscribe_all

    def login(self, user_id: str, token: str) -> SessionInfo:
        """Authenticate and subscribe to the entity. Raises AuthError."""
        session = self.sessions.authenticate(user_id, token)
        self.registry.subscribe(session.entity_id, user_id)
        return session

    def logout(self, user_id: str) -> None:
        self.sessions.logout(user_id)
        self.registry.unsubscribe_all(user_id)

    def require_session(self, user_id: str) -> SessionInfo:
        return self.sessions.require_session(user_id)

    def set_notifications(self, user_id: str, enabled: bool) -> SessionInfo:
        """Toggle notifications for the user's own entity.

        Raises:
            NotAuthenticatedError: If the user has no live session.
        """
        session = self.sessions.require_session(user_id)
        if enabled:
            self.registry.subscribe(session.entity_id, user_id)
        else:
            self.registry.unsubscribe(session.entity_id, user_id)
        return session

    def notification_status(self, user_id: str) -> NotificationStatus:
        session = self.sessions.require_session(user_id)
        return NotificationStatus(
            session=session,
            subscribed=self.registry.is_subscribed(user_id, session.entity_id),
            subscriptions=self.registry.subscriptions_of(user_id),
        )
