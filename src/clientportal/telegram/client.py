"""Outbound messaging via the Telegram Bot API.

Security: NEVER log chat ids, text or the bot token. Only hashes and lengths.
"""

from __future__ import annotations

import time
from typing import Any

import requests

from clientportal.config import TelegramConfig
from clientportal.errors import DeliveryError, DeliveryFailure
from clientportal.observability.logging import get_logger
from clientportal.observability.redaction import hash_identifier, safe_log_context
from clientportal.providers.base import ButtonRows

logger = get_logger(__name__)

# Retry config
MAX_RETRIES = 1
RETRY_DELAY = 0.2

PARSE_MODE = "HTML"

# Bot API descriptions (lowercased) that mean the chat will never accept messages
_PERMANENT_DESCRIPTIONS = (
    "chat not found",
    "bot was blocked",
    "user is deactivated",
    "bot was kicked",
    "forbidden",
)

_NOT_MODIFIED = "message is not modified"


def classify_failure(status_code: int | None, description: str) -> DeliveryFailure:
    """Map a Bot API error onto a delivery failure kind.

    403 (blocked, kicked, deactivated) and 400 "chat not found" are permanent.
    Everything else, including 429 and 5xx, is transient.
    """
    if status_code == 403:
        return DeliveryFailure.PERMANENTLY_UNREACHABLE
    normalized = (description or "").lower()
    if status_code == 400 and any(p in normalized for p in _PERMANENT_DESCRIPTIONS):
        return DeliveryFailure.PERMANENTLY_UNREACHABLE
    return DeliveryFailure.TRANSIENT


def build_reply_markup(buttons: ButtonRows | None) -> dict[str, Any] | None:
    if not buttons:
        return None
    return {
        "inline_keyboard": [
            [{"text": b.label, "callback_data": b.token} for b in row] for row in buttons
        ]
    }


class TelegramChannel:
    """MessagingChannel backed by the Bot API over HTTPS.

    Network errors and 5xx responses are retried once after RETRY_DELAY.
    Any other failure raises DeliveryError immediately.
    """

    def __init__(self, config: TelegramConfig, http: requests.Session | None = None) -> None:
        self._config = config
        self._http = http or requests.Session()
        self._base_url = f"{config.api_base_url}/bot{config.bot_token}"

    def send_message(
        self, recipient_id: str, text: str, buttons: ButtonRows | None = None
    ) -> str | None:
        payload: dict[str, Any] = {
            "chat_id": recipient_id,
            "text": text,
            "parse_mode": PARSE_MODE,
            "disable_web_page_preview": True,
        }
        markup = build_reply_markup(buttons)
        if markup:
            payload["reply_markup"] = markup
        result = self._call("sendMessage", recipient_id, json=payload, text_len=len(text))
        if isinstance(result, dict) and "message_id" in result:
            return str(result["message_id"])
        return None

    def edit_message(
        self,
        recipient_id: str,
        message_id: str,
        text: str,
        buttons: ButtonRows | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": recipient_id,
            "message_id": int(message_id),
            "text": text,
            "parse_mode": PARSE_MODE,
            "disable_web_page_preview": True,
        }
        markup = build_reply_markup(buttons)
        if markup:
            payload["reply_markup"] = markup
        try:
            self._call("editMessageText", recipient_id, json=payload, text_len=len(text))
        except DeliveryError as e:
            # identical re-render (e.g. a double tap) is not a failure
            if _NOT_MODIFIED in str(e).lower():
                return
            raise

    def answer_interaction(
        self, interaction_id: str, text: str | None = None, alert: bool = False
    ) -> None:
        payload: dict[str, Any] = {"callback_query_id": interaction_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = alert
        self._call("answerCallbackQuery", None, json=payload, text_len=len(text or ""))

    def send_document(self, recipient_id: str, data: bytes, filename: str) -> None:
        self._call(
            "sendDocument",
            recipient_id,
            data={"chat_id": recipient_id},
            files={"document": (filename, data)},
            text_len=len(data),
        )

    def _call(
        self,
        method: str,
        recipient_id: str | None,
        *,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        text_len: int = 0,
    ) -> Any:
        log_ctx = safe_log_context(
            method=method,
            to_hash=hash_identifier(recipient_id) if recipient_id else "",
            text_len=text_len,
        )
        url = f"{self._base_url}/{method}"

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = self._http.post(
                    url,
                    json=json,
                    data=data,
                    files=files,
                    timeout=self._config.http_timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < MAX_RETRIES:
                    logger.warning(
                        "telegram call failed, retrying",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx, attempt=attempt, error_type=type(e).__name__
                            )
                        },
                    )
                    time.sleep(RETRY_DELAY)
                    continue
                logger.error(
                    "telegram call failed",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, error_type=type(e).__name__
                        )
                    },
                )
                raise DeliveryError(DeliveryFailure.TRANSIENT, type(e).__name__) from e
            except requests.RequestException as e:
                raise DeliveryError(DeliveryFailure.TRANSIENT, type(e).__name__) from e

            if 500 <= response.status_code < 600 and attempt < MAX_RETRIES:
                logger.warning(
                    "telegram call failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, status_code=response.status_code
                        )
                    },
                )
                time.sleep(RETRY_DELAY)
                continue

            body = _json_body(response)
            if response.ok and body.get("ok", False):
                return body.get("result")

            description = str(body.get("description", "")) or response.reason or ""
            kind = classify_failure(response.status_code, description)
            logger.error(
                "telegram call rejected",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx,
                        attempt=attempt,
                        status_code=response.status_code,
                        failure=kind,
                    )
                },
            )
            raise DeliveryError(kind, description, status_code=response.status_code)

        # unreachable: the loop either returns or raises
        raise DeliveryError(DeliveryFailure.TRANSIENT)


def _json_body(response: requests.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
