"""Service account credentials shared by the Sheets and Drive providers."""

from __future__ import annotations

import base64
import binascii

from google.oauth2 import service_account

from clientportal.config import GoogleConfig
from clientportal.errors import ConfigError

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

TOKEN_URI = "https://oauth2.googleapis.com/token"


def decode_private_key(private_key_b64: str) -> str:
    """Decode a base64-wrapped PEM key.

    Raises:
        ConfigError: If the value is not base64 or does not decode to a PEM key.
    """
    try:
        pem = base64.b64decode(private_key_b64, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ConfigError("GOOGLE_PRIVATE_KEY_B64 is not valid base64") from e
    if "BEGIN PRIVATE KEY" not in pem:
        raise ConfigError("Decoded GOOGLE_PRIVATE_KEY_B64 is not a PEM")
    return pem


def get_credentials(config: GoogleConfig) -> service_account.Credentials:
    """Key file first, then client email + base64 key."""
    if config.key_file:
        try:
            return service_account.Credentials.from_service_account_file(
                config.key_file, scopes=SCOPES
            )
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot load service account key file: {type(e).__name__}") from e

    if config.client_email and config.private_key_b64:
        info = {
            "type": "service_account",
            "client_email": config.client_email,
            "private_key": decode_private_key(config.private_key_b64),
            "token_uri": TOKEN_URI,
        }
        try:
            return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        except ValueError as e:
            raise ConfigError("Invalid service account private key") from e

    raise ConfigError("Missing Google credentials")
