"""Change detection over the job records by full-snapshot diffing.

The record store offers no change feed, so every cycle fetches all records
and diffs them against the last-known snapshot:

- id not in snapshot         -> NEW
- status differs             -> STATUS_CHANGED (old and new recorded)
- id vanished from the store -> REMOVED, only when report_removed is on

The first successful cycle only fills the snapshot (bootstrap is silent).
A provider failure aborts the cycle and leaves the snapshot untouched.
Cycles never overlap: a cycle that finds another in flight is skipped.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from clientportal.errors import ProviderError
from clientportal.infra.time import Clock, utc_now
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import safe_log_context
from clientportal.providers.base import Record, RecordProvider

logger = get_logger(__name__)


class ChangeKind(str, Enum):
    NEW = "new"
    STATUS_CHANGED = "status_changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class JobSnapshot:
    """Last-known state of one record."""

    status: str
    title: str
    owner_id: str
    updated_at: str


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    record: Record
    old_status: str | None = None

    @property
    def entity_id(self) -> str:
        return self.record.owner_id


class ChangeSink(Protocol):
    def deliver(self, entity_id: str, event: ChangeEvent) -> object: ...


class ChangeDetector:
    """Owns the job snapshot and runs poll cycles.

    Args:
        provider: Record store to poll.
        notifier: Receives every classified change.
        report_removed: Emit REMOVED (and evict) for records that vanished.
            When off, vanished records stay in the snapshot silently.
        clock: Used to stamp snapshot entries whose record has no timestamp.
    """

    def __init__(
        self,
        provider: RecordProvider,
        notifier: ChangeSink,
        report_removed: bool = False,
        clock: Clock = utc_now,
    ) -> None:
        self._provider = provider
        self._notifier = notifier
        self._report_removed = report_removed
        self._clock = clock
        self._snapshot: dict[str, JobSnapshot] = {}
        self._snapshot_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._bootstrapped = False

    @property
    def bootstrapped(self) -> bool:
        return self._bootstrapped

    def snapshot(self) -> dict[str, JobSnapshot]:
        """Copy of the current snapshot."""
        with self._snapshot_lock:
            return dict(self._snapshot)

    def poll_once(self) -> list[ChangeEvent]:
        """Run one cycle. Returns the events emitted (empty on skip/bootstrap/failure)."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("poll cycle skipped: previous cycle still running")
            return []
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> list[ChangeEvent]:
        try:
            records = self._provider.list_records()
        except ProviderError as e:
            logger.error(
                "poll cycle aborted: record fetch failed",
                extra={"extra_fields": safe_log_context(error_kind=e.kind)},
            )
            return []

        with self._snapshot_lock:
            if not self._bootstrapped:
                for record in records:
                    self._snapshot[record.id] = self._to_snapshot(record)
                self._bootstrapped = True
                logger.info(
                    "job snapshot bootstrapped",
                    extra={"extra_fields": {"records": len(self._snapshot)}},
                )
                return []
            events = self._diff_and_update(records)

        for event in events:
            try:
                self._notifier.deliver(event.entity_id, event)
            except Exception:
                logger.exception(
                    "change delivery failed",
                    extra={"extra_fields": safe_log_context(record_id=event.record.id, kind=event.kind)},
                )

        logger.info(
            "poll cycle finished",
            extra={"extra_fields": {"records": len(records), "events": len(events)}},
        )
        return events

    def _diff_and_update(self, records: list[Record]) -> list[ChangeEvent]:
        # caller holds _snapshot_lock
        events: list[ChangeEvent] = []
        seen: set[str] = set()

        for record in records:
            seen.add(record.id)
            previous = self._snapshot.get(record.id)
            if previous is None:
                events.append(ChangeEvent(kind=ChangeKind.NEW, record=record))
            elif previous.status != record.status:
                events.append(
                    ChangeEvent(
                        kind=ChangeKind.STATUS_CHANGED,
                        record=record,
                        old_status=previous.status,
                    )
                )
            # always overwrite so the next diff runs against the latest truth
            self._snapshot[record.id] = self._to_snapshot(record)

        if self._report_removed:
            for record_id in [rid for rid in self._snapshot if rid not in seen]:
                gone = self._snapshot.pop(record_id)
                events.append(
                    ChangeEvent(
                        kind=ChangeKind.REMOVED,
                        record=Record(
                            id=record_id,
                            title=gone.title,
                            status=gone.status,
                            owner_id=gone.owner_id,
                            updated_at=gone.updated_at,
                        ),
                        old_status=gone.status,
                    )
                )
        return events

    def _to_snapshot(self, record: Record) -> JobSnapshot:
        return JobSnapshot(
            status=record.status,
            title=record.title,
            owner_id=record.owner_id,
            updated_at=record.updated_at or self._clock().isoformat(),
        )
