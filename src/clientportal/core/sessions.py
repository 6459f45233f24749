"""In-memory session store: which channel user is signed in as which entity.

State is process-lifetime only. Retention is governed by an optional TTL;
with no TTL a session lives until explicit logout. Expiry is reported to
the on_expired hook so it can be treated like a logout.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from clientportal.errors import (
    AuthError,
    AuthFailure,
    NotAuthenticatedError,
    ProviderError,
)
from clientportal.infra.locks import KeyedLocks
from clientportal.infra.time import Clock, is_expired, utc_now
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import user_log_context
from clientportal.providers.base import RecordProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """Authenticated identity for one channel user."""

    user_id: str
    entity_id: str
    entity_name: str
    entity_code: str
    authenticated_at: datetime


class SessionStore:
    """Per-user session map guarded by striped locks.

    Args:
        provider: Record provider used to resolve auth codes.
        ttl_seconds: Optional session lifetime. None means no expiry.
        clock: Injectable clock (tests).
        on_expired: Called with the user id whenever a session expires.
            Runs under that user's lock, before a new login can land.
    """

    def __init__(
        self,
        provider: RecordProvider,
        ttl_seconds: float | None = None,
        clock: Clock = utc_now,
        on_expired: Callable[[str], None] | None = None,
    ) -> None:
        self._provider = provider
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self.on_expired = on_expired
        self._sessions: dict[str, SessionInfo] = {}
        self._locks = KeyedLocks()

    def authenticate(self, user_id: str, credential_token: str) -> SessionInfo:
        """Resolve an auth code and create (or overwrite) the user's session.

        Raises:
            AuthError: NOT_FOUND if no entity holds the code,
                PROVIDER_UNAVAILABLE if the lookup itself failed.
        """
        token = (credential_token or "").strip()
        if not token:
            raise AuthError(AuthFailure.NOT_FOUND, "empty auth code")

        try:
            entity = self._provider.find_entity_by_secret(token)
        except ProviderError as e:
            logger.warning(
                "auth lookup failed",
                extra={"extra_fields": user_log_context(user_id, error_kind=e.kind)},
            )
            raise AuthError(AuthFailure.PROVIDER_UNAVAILABLE) from e

        if entity is None:
            logger.info(
                "auth code not recognised",
                extra={"extra_fields": user_log_context(user_id)},
            )
            raise AuthError(AuthFailure.NOT_FOUND)

        session = SessionInfo(
            user_id=user_id,
            entity_id=entity.id,
            entity_name=entity.display_name,
            entity_code=entity.code,
            authenticated_at=self._clock(),
        )
        with self._locks.hold(user_id):
            self._sessions[user_id] = session

        logger.info(
            "user authenticated",
            extra={"extra_fields": user_log_context(user_id, entity_id=entity.id)},
        )
        return session

    def current_session(self, user_id: str) -> SessionInfo | None:
        """Return the live session for user_id, dropping it if it has expired."""
        with self._locks.hold(user_id):
            session = self._sessions.get(user_id)
            if session is None:
                return None
            if is_expired(session.authenticated_at, self._ttl_seconds, self._clock()):
                self._expire(user_id)
                logger.info(
                    "session expired",
                    extra={"extra_fields": user_log_context(user_id)},
                )
                return None
            return session

    def require_session(self, user_id: str) -> SessionInfo:
        """Gate for authenticated operations.

        Raises:
            NotAuthenticatedError: If the user has no live session.
        """
        session = self.current_session(user_id)
        if session is None:
            raise NotAuthenticatedError()
        return session

    def logout(self, user_id: str) -> None:
        """Remove the session. No-op if absent."""
        with self._locks.hold(user_id):
            removed = self._sessions.pop(user_id, None)
        if removed is not None:
            logger.info("user logged out", extra={"extra_fields": user_log_context(user_id)})

    def purge_expired(self) -> int:
        """Drop every expired session. Returns the number removed."""
        if not self._ttl_seconds:
            return 0
        now = self._clock()
        removed = 0
        for user_id in list(self._sessions):
            with self._locks.hold(user_id):
                session = self._sessions.get(user_id)
                if session is not None and is_expired(
                    session.authenticated_at, self._ttl_seconds, now
                ):
                    self._expire(user_id)
                    removed += 1
        if removed:
            logger.info(
                "expired sessions purged",
                extra={"extra_fields": {"count": removed}},
            )
        return removed

    def _expire(self, user_id: str) -> None:
        # caller holds the user's lock
        del self._sessions[user_id]
        if self.on_expired is not None:
            self.on_expired(user_id)

    def __len__(self) -> int:
        return len(self._sessions)
