"""Google Sheets record provider.

The spreadsheet holds three tabs whose first row is a header:

- Clients: ID, Code, Name, Contact, Email, Phone, Notes, Channel ID,
  Created At, Archived, Auth Code
- Jobs: ID, Client ID, Title, Status, Priority, Deadline, Description,
  Notes, Updated At (extra columns are ignored)
- Invoices: ID, Client ID, Total, Status, Due At (extra columns are ignored)

Headers are matched case-insensitively, ignoring spaces and underscores, so
"Client ID", "client_id" and "clientId" are the same column.
"""

from __future__ import annotations

import re
import secrets
import string
from typing import Any, Callable, Sequence

from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import Error as GoogleApiError

from clientportal.config import GoogleConfig
from clientportal.errors import ProviderError, ProviderFailure
from clientportal.infra.time import Clock, utc_now
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import safe_log_context
from clientportal.providers.base import Entity, EntityRef, Invoice, Record
from clientportal.providers.google_auth import get_credentials

logger = get_logger(__name__)

CLIENTS_TAB = "Clients"
JOBS_TAB = "Jobs"
INVOICES_TAB = "Invoices"

# Column order used when appending a new client row
CLIENT_COLUMNS = [
    "ID",
    "Code",
    "Name",
    "Contact",
    "Email",
    "Phone",
    "Notes",
    "Channel ID",
    "Created At",
    "Archived",
    "Auth Code",
]

CLIENT_CODE_LENGTH = 6
_CODE_ALPHABET = string.ascii_uppercase + string.digits

# field -> accepted header keys (normalized), first present wins
_CLIENT_FIELDS = {
    "id": ("id",),
    "name": ("name",),
    "code": ("code",),
    "auth_code": ("authcode",),
}
_JOB_FIELDS = {
    "id": ("id",),
    "owner_id": ("clientid",),
    "title": ("title",),
    "status": ("status",),
    "priority": ("priority",),
    "deadline": ("deadline",),
    "description": ("description",),
    "notes": ("notes",),
    "updated_at": ("updatedat", "lastupdated"),
}
_INVOICE_FIELDS = {
    "id": ("id",),
    "number": ("number", "invoicenumber", "id"),
    "owner_id": ("clientid",),
    "amount": ("total", "amount"),
    "status": ("status",),
    "due_date": ("dueat", "duedate"),
}

_REQUIRED = {
    CLIENTS_TAB: ("id", "auth_code"),
    JOBS_TAB: ("id", "owner_id", "status"),
    INVOICES_TAB: ("id", "owner_id"),
}

_HEADER_NOISE = re.compile(r"[\s_\-]")


def normalize_header(header: str) -> str:
    return _HEADER_NOISE.sub("", str(header)).lower()


def generate_client_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CLIENT_CODE_LENGTH))


def rows_to_dicts(
    tab: str,
    rows: Sequence[Sequence[Any]],
    fields: dict[str, tuple[str, ...]],
) -> list[dict[str, str]]:
    """Map data rows onto field names using the header row.

    Short rows are padded with empty strings; rows without an id are skipped.

    Raises:
        ProviderError: MALFORMED if a required column is missing.
    """
    if not rows:
        return []

    header = [normalize_header(h) for h in rows[0]]
    positions: dict[str, int] = {}
    for field_name, candidates in fields.items():
        for candidate in candidates:
            if candidate in header:
                positions[field_name] = header.index(candidate)
                break

    missing = [f for f in _REQUIRED[tab] if f not in positions]
    if missing:
        raise ProviderError(
            ProviderFailure.MALFORMED, f"{tab} tab is missing columns: {', '.join(missing)}"
        )

    result = []
    for row in rows[1:]:
        item = {
            field_name: str(row[pos]).strip() if pos < len(row) else ""
            for field_name, pos in positions.items()
        }
        if not item.get("id"):
            continue
        for field_name in fields:
            item.setdefault(field_name, "")
        result.append(item)
    return result


def build_notes_summary(fields: dict[str, Any]) -> str:
    """One-line summary of intake answers for the client Notes cell."""
    parts = []
    if fields.get("company"):
        parts.append(f"Company: {fields['company']}")
    parts.append(f"Project: {', '.join(fields.get('project_types') or [])}")
    parts.append(f"Goal: {fields.get('project_goal', '')}")
    parts.append(f"Budget: {fields.get('budget', '')}")
    parts.append(f"Timeframe: {fields.get('timeframe', '')}")
    if fields.get("additional_info"):
        parts.append(f"Notes: {fields['additional_info']}")
    return " | ".join(parts)


class SheetsRecordProvider:
    """RecordProvider reading the Clients/Jobs/Invoices tabs.

    Args:
        sheet_id: Spreadsheet id.
        service: A googleapiclient Sheets v4 resource.
        clock: Stamps the Created At cell of new clients.
        code_factory: Generates the public code of new clients.
    """

    def __init__(
        self,
        sheet_id: str,
        service: Any,
        clock: Clock = utc_now,
        code_factory: Callable[[], str] = generate_client_code,
    ) -> None:
        self._sheet_id = sheet_id
        self._service = service
        self._clock = clock
        self._code_factory = code_factory

    @classmethod
    def from_config(cls, config: GoogleConfig) -> SheetsRecordProvider:
        service = build(
            "sheets", "v4", credentials=get_credentials(config), cache_discovery=False
        )
        return cls(config.sheet_id, service)

    def list_entities(self) -> list[Entity]:
        rows = rows_to_dicts(CLIENTS_TAB, self._fetch(CLIENTS_TAB), _CLIENT_FIELDS)
        return [
            Entity(
                id=row["id"],
                display_name=row["name"],
                code=row["code"],
                secret_token=row["auth_code"],
            )
            for row in rows
        ]

    def list_records(self) -> list[Record]:
        rows = rows_to_dicts(JOBS_TAB, self._fetch(JOBS_TAB), _JOB_FIELDS)
        return [
            Record(
                id=row["id"],
                title=row["title"],
                status=row["status"],
                owner_id=row["owner_id"],
                updated_at=row["updated_at"],
                description=row["description"],
                notes=row["notes"],
                deadline=row["deadline"],
                priority=row["priority"],
            )
            for row in rows
        ]

    def list_invoices(self) -> list[Invoice]:
        rows = rows_to_dicts(INVOICES_TAB, self._fetch(INVOICES_TAB), _INVOICE_FIELDS)
        return [
            Invoice(
                id=row["id"],
                number=row["number"] or row["id"],
                owner_id=row["owner_id"],
                amount=row["amount"],
                status=row["status"],
                due_date=row["due_date"],
            )
            for row in rows
        ]

    def find_entity_by_secret(self, token: str) -> Entity | None:
        """Exact match on the Auth Code column. Empty codes never match."""
        if not token:
            return None
        for entity in self.list_entities():
            if entity.secret_token and entity.secret_token == token:
                return entity
        return None

    def create_entity(self, fields: dict[str, Any]) -> EntityRef:
        """Append a client row built from intake answers.

        The new id is one more than the highest numeric id in the tab.
        """
        entities = self.list_entities()
        numeric_ids = [int(e.id) for e in entities if e.id.isdigit()]
        next_id = str(max(numeric_ids, default=0) + 1)
        code = self._code_factory()
        auth_code = str(fields.get("auth_code", ""))

        row = [
            next_id,
            code,
            fields.get("name", ""),
            fields.get("email", ""),
            fields.get("email", ""),
            fields.get("phone", ""),
            build_notes_summary(fields),
            "",
            self._clock().isoformat(),
            "false",
            auth_code,
        ]

        self._execute(
            "append",
            CLIENTS_TAB,
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self._sheet_id,
                range=f"'{CLIENTS_TAB}'!A:K",
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [row]},
            ),
        )
        logger.info(
            "client row appended",
            extra={"extra_fields": safe_log_context(entity_id=next_id)},
        )
        return EntityRef(id=next_id, code=code, secret_token=auth_code)

    def _fetch(self, tab: str) -> list[list[Any]]:
        result = self._execute(
            "get",
            tab,
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=self._sheet_id, range=f"'{tab}'!A:Z"),
        )
        return result.get("values", []) if isinstance(result, dict) else []

    def _execute(self, op: str, tab: str, request: Any) -> Any:
        try:
            return request.execute()
        except (GoogleApiError, GoogleAuthError, OSError) as e:
            logger.error(
                "sheets request failed",
                extra={
                    "extra_fields": safe_log_context(
                        op=op, tab=tab, error_type=type(e).__name__
                    )
                },
            )
            raise ProviderError(ProviderFailure.UNAVAILABLE, f"sheets {op} {tab} failed") from e
