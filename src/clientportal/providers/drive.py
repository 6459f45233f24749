"""Google Drive file provider.

Layout: <shared drive>/Client Files/<client code>/[<job id>/]<files>.
Client folders are matched by the trimmed code, or by the code padded or
cut to four characters (older folders were named that way).
"""

from __future__ import annotations

import io
from typing import Any

from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import Error as GoogleApiError
from googleapiclient.http import MediaIoBaseDownload

from clientportal.config import GoogleConfig
from clientportal.errors import ProviderError, ProviderFailure
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import safe_log_context
from clientportal.providers.base import DownloadedFile, FileInfo
from clientportal.providers.google_auth import get_credentials

logger = get_logger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
CLIENT_FILES_FOLDER = "Client Files"
FILE_FIELDS = "files(id, name, mimeType, size, modifiedTime)"


def _quote(value: str) -> str:
    """Escape a literal for a Drive query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def folder_name_candidates(entity_code: str) -> list[str]:
    trimmed = entity_code.strip()
    padded = entity_code.ljust(4)[:4]
    candidates = [trimmed]
    if padded != trimmed:
        candidates.append(padded)
    return [c for c in candidates if c.strip()]


def _to_file_info(raw: dict[str, Any]) -> FileInfo:
    size = raw.get("size")
    return FileInfo(
        id=str(raw.get("id", "")),
        name=str(raw.get("name", "")),
        mime_type=str(raw.get("mimeType", "")),
        size=int(size) if size not in (None, "") else None,
        modified_time=str(raw.get("modifiedTime", "")),
    )


class DriveFileProvider:
    """FileProvider over a Drive v3 resource.

    Args:
        service: A googleapiclient Drive v3 resource.
        shared_drive_id: Shared drive holding the Client Files folder.
            When None the folder is looked up across all drives.
    """

    def __init__(self, service: Any, shared_drive_id: str | None = None) -> None:
        self._service = service
        self._shared_drive_id = shared_drive_id

    @classmethod
    def from_config(cls, config: GoogleConfig) -> DriveFileProvider:
        service = build("drive", "v3", credentials=get_credentials(config), cache_discovery=False)
        return cls(service, config.shared_drive_id)

    def list_files(self, entity_code: str, record_id: str | None = None) -> list[FileInfo]:
        """Files in the entity folder (or a job subfolder), sorted by name.

        A missing folder yields an empty list.
        """
        folder_id = self._find_client_folder(entity_code)
        if folder_id is None:
            return []
        if record_id:
            folder_id = self._find_folder(record_id.strip(), folder_id)
            if folder_id is None:
                return []

        result = self._list(
            f"'{_quote(folder_id)}' in parents and trashed=false",
            fields=FILE_FIELDS,
            orderBy="name",
        )
        return [_to_file_info(raw) for raw in result]

    def download_file(self, file_id: str) -> DownloadedFile:
        files = self._service.files()
        metadata = self._execute(
            "get",
            files.get(fileId=file_id, supportsAllDrives=True, fields="name, mimeType"),
        )
        if metadata.get("mimeType") == FOLDER_MIME_TYPE:
            raise ProviderError(ProviderFailure.MALFORMED, "cannot download a folder")

        buffer = io.BytesIO()
        request = files.get_media(fileId=file_id, supportsAllDrives=True)
        try:
            downloader = MediaIoBaseDownload(buffer, request)
            done = False
            while not done:
                _, done = downloader.next_chunk()
        except (GoogleApiError, GoogleAuthError, OSError) as e:
            logger.error(
                "drive download failed",
                extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
            )
            raise ProviderError(ProviderFailure.UNAVAILABLE, "drive download failed") from e

        return DownloadedFile(
            name=str(metadata.get("name", file_id)),
            mime_type=str(metadata.get("mimeType", "application/octet-stream")),
            data=buffer.getvalue(),
        )

    def _find_client_folder(self, entity_code: str) -> str | None:
        root_query = (
            f"name='{CLIENT_FILES_FOLDER}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        if self._shared_drive_id:
            root_query += f" and '{_quote(self._shared_drive_id)}' in parents"
        roots = self._list(root_query, fields="files(id, name)")
        if not roots:
            logger.warning("client files folder not found")
            return None
        root_id = str(roots[0]["id"])

        for name in folder_name_candidates(entity_code):
            folder_id = self._find_folder(name, root_id)
            if folder_id is not None:
                return folder_id
        return None

    def _find_folder(self, name: str, parent_id: str) -> str | None:
        found = self._list(
            f"name='{_quote(name)}' and mimeType='{FOLDER_MIME_TYPE}' "
            f"and '{_quote(parent_id)}' in parents and trashed=false",
            fields="files(id, name)",
        )
        return str(found[0]["id"]) if found else None

    def _list(self, query: str, **kwargs: Any) -> list[dict[str, Any]]:
        request = self._service.files().list(
            q=query,
            includeItemsFromAllDrives=True,
            supportsAllDrives=True,
            **kwargs,
        )
        result = self._execute("list", request)
        return list(result.get("files", []))

    def _execute(self, op: str, request: Any) -> dict[str, Any]:
        try:
            result = request.execute()
        except (GoogleApiError, GoogleAuthError, OSError) as e:
            logger.error(
                "drive request failed",
                extra={"extra_fields": safe_log_context(op=op, error_type=type(e).__name__)},
            )
            raise ProviderError(ProviderFailure.UNAVAILABLE, f"drive {op} failed") from e
        return result if isinstance(result, dict) else {}
