"""Telegram webhook payloads: validate and normalize into inbound events.

Only private text messages and callback queries are handled. Other update
kinds (edits, channel posts, stickers) normalize to None and are ignored.

Security: chat ids and text are PII. Use them in memory only, never log them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class InvalidUpdateError(Exception):
    """Raised when a Telegram update has an invalid shape."""

    pass


class TgUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: str = ""
    username: str | None = None


class TgChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    type: str = "private"


class TgMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: int
    chat: TgChat
    from_: TgUser | None = Field(default=None, alias="from")
    text: str | None = None


class TgCallbackQuery(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    from_: TgUser = Field(alias="from")
    message: TgMessage | None = None
    data: str | None = None


class TgUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: int
    message: TgMessage | None = None
    callback_query: TgCallbackQuery | None = None


@dataclass(frozen=True)
class InboundMessage:
    """A text message from a user. user_id is also the reply address."""

    update_id: int
    user_id: str
    chat_id: str
    message_id: str
    text: str
    first_name: str = ""

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/")

    def command(self) -> tuple[str, str]:
        """Split "/cmd@bot args" into ("/cmd", "args")."""
        head, _, rest = self.text.strip().partition(" ")
        return head.split("@", 1)[0].lower(), rest.strip()


@dataclass(frozen=True)
class InboundCallback:
    """A button press. interaction_id must always be answered."""

    update_id: int
    interaction_id: str
    user_id: str
    chat_id: str
    message_id: str | None
    token: str


Inbound = InboundMessage | InboundCallback


def parse_update(payload: dict[str, Any]) -> TgUpdate:
    """Validate the raw update shape.

    Raises:
        InvalidUpdateError: If required fields are missing or invalid.
    """
    try:
        return TgUpdate.model_validate(payload)
    except ValidationError as e:
        raise InvalidUpdateError(f"invalid update: {e.error_count()} error(s)") from e


def normalize(payload: dict[str, Any]) -> Inbound | None:
    """Normalize a webhook payload.

    Returns:
        InboundMessage for text messages in private chats, InboundCallback
        for button presses, None for anything else.

    Raises:
        InvalidUpdateError: If the payload is not a valid update.
    """
    update = parse_update(payload)

    callback = update.callback_query
    if callback is not None:
        message = callback.message
        chat_id = str(message.chat.id) if message else str(callback.from_.id)
        return InboundCallback(
            update_id=update.update_id,
            interaction_id=callback.id,
            user_id=str(callback.from_.id),
            chat_id=chat_id,
            message_id=str(message.message_id) if message else None,
            token=callback.data or "",
        )

    message = update.message
    if message is None or message.text is None:
        return None
    if message.chat.type != "private":
        return None

    user = message.from_
    return InboundMessage(
        update_id=update.update_id,
        user_id=str(user.id if user else message.chat.id),
        chat_id=str(message.chat.id),
        message_id=str(message.message_id),
        text=message.text,
        first_name=user.first_name if user else "",
    )
