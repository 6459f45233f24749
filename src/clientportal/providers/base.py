"""Collaborator contracts: record store, messaging channel, file store.

The core only talks to these protocols. Concrete adapters live in
providers.sheets, providers.drive and telegram.client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence


@dataclass(frozen=True)
class Entity:
    """An owning client account."""

    id: str
    display_name: str
    code: str
    secret_token: str = field(repr=False, default="")


@dataclass(frozen=True)
class Record:
    """A tracked job row."""

    id: str
    title: str
    status: str
    owner_id: str
    updated_at: str = ""
    description: str = ""
    notes: str = ""
    deadline: str = ""
    priority: str = ""


@dataclass(frozen=True)
class Invoice:
    """An invoice row belonging to an entity."""

    id: str
    number: str
    owner_id: str
    amount: str = ""
    status: str = ""
    due_date: str = ""


@dataclass(frozen=True)
class EntityRef:
    """Reference returned after creating a new entity."""

    id: str
    code: str
    secret_token: str = field(repr=False, default="")


@dataclass(frozen=True)
class FileInfo:
    """Metadata for a file stored under an entity folder."""

    id: str
    name: str
    mime_type: str
    size: int | None = None
    modified_time: str = ""

    @property
    def is_folder(self) -> bool:
        return self.mime_type == "application/vnd.google-apps.folder"


# display buckets, first match wins
FILE_CATEGORIES = ("invoices", "contracts", "images", "documents", "other")


def categorize_files(files: Sequence[FileInfo]) -> dict[str, list[FileInfo]]:
    """Group files for display: invoices, contracts, images, documents, other."""
    categories: dict[str, list[FileInfo]] = {name: [] for name in FILE_CATEGORIES}
    for f in files:
        name = f.name.lower()
        mime = f.mime_type or ""
        if "invoice" in name:
            categories["invoices"].append(f)
        elif "contract" in name or "agreement" in name:
            categories["contracts"].append(f)
        elif mime.startswith("image/"):
            categories["images"].append(f)
        elif "document" in mime or "pdf" in mime or "text" in mime:
            categories["documents"].append(f)
        else:
            categories["other"].append(f)
    return categories


@dataclass(frozen=True)
class DownloadedFile:
    name: str
    mime_type: str
    data: bytes = field(repr=False, default=b"")


@dataclass(frozen=True)
class Button:
    """Inline button: a visible label and the opaque token sent back on press."""

    label: str
    token: str


ButtonRows = Sequence[Sequence[Button]]


class RecordProvider(Protocol):
    """Tabular store of entities, job records and invoices.

    All methods raise ProviderError on failure.
    """

    def list_entities(self) -> list[Entity]: ...

    def list_records(self) -> list[Record]: ...

    def list_invoices(self) -> list[Invoice]: ...

    def find_entity_by_secret(self, token: str) -> Entity | None: ...

    def create_entity(self, fields: dict[str, Any]) -> EntityRef: ...


class MessagingChannel(Protocol):
    """Outbound side of the chat platform.

    All methods raise DeliveryError on failure.
    """

    def send_message(
        self, recipient_id: str, text: str, buttons: ButtonRows | None = None
    ) -> str | None: ...

    def edit_message(
        self,
        recipient_id: str,
        message_id: str,
        text: str,
        buttons: ButtonRows | None = None,
    ) -> None: ...

    def answer_interaction(
        self, interaction_id: str, text: str | None = None, alert: bool = False
    ) -> None: ...

    def send_document(self, recipient_id: str, data: bytes, filename: str) -> None: ...


class FileProvider(Protocol):
    """Per-entity file storage. Raises ProviderError on failure."""

    def list_files(self, entity_code: str, record_id: str | None = None) -> list[FileInfo]: ...

    def download_file(self, file_id: str) -> DownloadedFile: ...
