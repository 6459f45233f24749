"""Shared test helpers for client portal tests.

In-memory fakes for the collaborator protocols plus a deterministic clock
and a log recorder. These are NOT fixtures - they are regular classes.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any

from clientportal.errors import DeliveryError, ProviderError, ProviderFailure
from clientportal.providers.base import (
    ButtonRows,
    DownloadedFile,
    Entity,
    EntityRef,
    FileInfo,
    Invoice,
    Record,
)

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_record(
    record_id: str,
    status: str = "Pending",
    owner_id: str = "C1",
    title: str | None = None,
    **kwargs: Any,
) -> Record:
    return Record(
        id=record_id,
        title=title or f"Job {record_id}",
        status=status,
        owner_id=owner_id,
        **kwargs,
    )


class FakeRecordProvider:
    """RecordProvider backed by plain lists. Set fail_with to make calls raise."""

    def __init__(
        self,
        entities: list[Entity] | None = None,
        records: list[Record] | None = None,
        invoices: list[Invoice] | None = None,
    ):
        self.entities = list(entities or [])
        self.records = list(records or [])
        self.invoices = list(invoices or [])
        self.fail_with: ProviderError | None = None
        self.created: list[dict[str, Any]] = []
        self.lookups: list[str] = []
        self.list_records_calls = 0

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def list_entities(self) -> list[Entity]:
        self._check()
        return list(self.entities)

    def list_records(self) -> list[Record]:
        self.list_records_calls += 1
        self._check()
        return list(self.records)

    def list_invoices(self) -> list[Invoice]:
        self._check()
        return list(self.invoices)

    def find_entity_by_secret(self, token: str) -> Entity | None:
        self.lookups.append(token)
        self._check()
        return next((e for e in self.entities if e.secret_token == token), None)

    def create_entity(self, fields: dict[str, Any]) -> EntityRef:
        self._check()
        self.created.append(dict(fields))
        new_id = str(len(self.entities) + len(self.created))
        return EntityRef(id=new_id, code=f"CODE{new_id}", secret_token=fields.get("auth_code", ""))


def unavailable() -> ProviderError:
    return ProviderError(ProviderFailure.UNAVAILABLE, "store down")


class FakeChannel:
    """MessagingChannel that records every call.

    failures maps recipient id -> exception raised by send_message.
    """

    def __init__(self):
        self.sent: list[tuple[str, str, ButtonRows | None]] = []
        self.edits: list[tuple[str, str, str, ButtonRows | None]] = []
        self.answers: list[tuple[str, str | None, bool]] = []
        self.documents: list[tuple[str, bytes, str]] = []
        self.failures: dict[str, Exception] = {}
        self.edit_failure: Exception | None = None
        self._next_id = 100
        self._lock = threading.Lock()

    def send_message(self, recipient_id: str, text: str, buttons: ButtonRows | None = None) -> str:
        error = self.failures.get(recipient_id)
        if error is not None:
            raise error
        with self._lock:
            self.sent.append((recipient_id, text, buttons))
            self._next_id += 1
            return str(self._next_id)

    def edit_message(
        self, recipient_id: str, message_id: str, text: str, buttons: ButtonRows | None = None
    ) -> None:
        if self.edit_failure is not None:
            raise self.edit_failure
        with self._lock:
            self.edits.append((recipient_id, message_id, text, buttons))

    def answer_interaction(self, interaction_id: str, text: str | None = None, alert: bool = False) -> None:
        with self._lock:
            self.answers.append((interaction_id, text, alert))

    def send_document(self, recipient_id: str, data: bytes, filename: str) -> None:
        with self._lock:
            self.documents.append((recipient_id, data, filename))

    def texts_to(self, recipient_id: str) -> list[str]:
        return [text for rid, text, _ in self.sent if rid == recipient_id]

    def recipients(self) -> list[str]:
        return [rid for rid, _, _ in self.sent]


class FakeFileProvider:
    """FileProvider over a dict. Job folders are keyed "<entity code>/<job id>"."""

    def __init__(self, files: dict[str, list[FileInfo]] | None = None, content: bytes = b"%PDF-1.4"):
        self.files = files or {}
        self.content = content
        self.downloads: list[str] = []
        self.listings: list[tuple[str, str | None]] = []

    def list_files(self, entity_code: str, record_id: str | None = None) -> list[FileInfo]:
        self.listings.append((entity_code, record_id))
        key = f"{entity_code}/{record_id}" if record_id else entity_code
        return list(self.files.get(key, []))

    def download_file(self, file_id: str) -> DownloadedFile:
        self.downloads.append(file_id)
        for files in self.files.values():
            for f in files:
                if f.id == file_id:
                    return DownloadedFile(name=f.name, mime_type=f.mime_type, data=self.content)
        raise ProviderError(ProviderFailure.UNAVAILABLE, "no such file")


def permanent_failure() -> DeliveryError:
    from clientportal.errors import DeliveryFailure

    return DeliveryError(DeliveryFailure.PERMANENTLY_UNREACHABLE, "Forbidden: bot was blocked by the user", 403)


def transient_failure() -> DeliveryError:
    from clientportal.errors import DeliveryFailure

    return DeliveryError(DeliveryFailure.TRANSIENT, "Too Many Requests", 429)


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []
        self._lock = threading.Lock()

    def _record(self, level: str, *args, **kwargs):
        with self._lock:
            self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def get_all_logged_content(self) -> str:
        """Concatenate all args and kwargs from all calls into one string."""
        parts = []
        for _, args, kwargs in self.calls:
            parts.append(str(args))
            parts.append(str(kwargs))
        return " ".join(parts)

    def has_extra_field(self, key: str) -> bool:
        """Check if any call has the given key in extra_fields."""
        for _, _, kwargs in self.calls:
            extra = kwargs.get("extra", {})
            if key in extra.get("extra_fields", {}):
                return True
        return False

    def messages(self, level: str | None = None) -> list[str]:
        return [args[0] for lvl, args, _ in self.calls if args and (level is None or lvl == level)]
