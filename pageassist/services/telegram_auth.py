"""
Telegram Mini-App init data verification.

The Mini-App passes a signed query string. The signing key is
HMAC-SHA256(key="WebAppData", msg=bot_token); the signature is
HMAC-SHA256(key=signing_key, msg=data_check_string) where the data check
string is the remaining key=value pairs sorted by key and joined by newlines.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from urllib.parse import parse_qsl

from structlog import get_logger

from pageassist.exceptions import AuthenticationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TelegramInitData:
    """Verified fields extracted from init data."""

    telegram_id: str | None
    auth_date: int | None


def data_check_string(pairs: list[tuple[str, str]]) -> str:
    """Sorted key=value lines, excluding the hash field."""
    return "\n".join(f"{key}={value}" for key, value in sorted(pairs) if key != "hash")


def sign_init_data(pairs: list[tuple[str, str]], bot_token: str) -> str:
    """Compute the hex signature for the given init data pairs."""
    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(
        secret_key, data_check_string(pairs).encode(), hashlib.sha256
    ).hexdigest()


def verify_init_data(
    init_data: str, bot_token: str, max_age_seconds: int | None = None
) -> TelegramInitData:
    """
    Verify a Mini-App init data string.

    With ``max_age_seconds`` set, ``auth_date`` is required and must be no
    older than that.

    Raises:
        AuthenticationError: If the string is missing, unsigned, stale, or
            the signature does not match
    """
    if not init_data:
        raise AuthenticationError("Telegram init data required")

    pairs = parse_qsl(init_data, keep_blank_values=True)
    provided_hash = next((value for key, value in pairs if key == "hash"), None)
    if not provided_hash:
        raise AuthenticationError("Telegram init data is not signed")

    expected_hash = sign_init_data(pairs, bot_token)
    if not hmac.compare_digest(expected_hash, provided_hash):
        logger.warning("telegram_init_data_signature_mismatch")
        raise AuthenticationError("Invalid Telegram signature")

    fields = dict(pairs)
    telegram_id: str | None = None
    if "user" in fields:
        try:
            telegram_id = str(json.loads(fields["user"])["id"])
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("Malformed Telegram user field") from e

    auth_date = int(fields["auth_date"]) if fields.get("auth_date", "").isdigit() else None
    if max_age_seconds is not None:
        if auth_date is None:
            raise AuthenticationError("Telegram init data has no auth_date")
        if time.time() - auth_date > max_age_seconds:
            logger.info("telegram_init_data_expired", auth_date=auth_date)
            raise AuthenticationError("Telegram init data expired")

    return TelegramInitData(telegram_id=telegram_id, auth_date=auth_date)
