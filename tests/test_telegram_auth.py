"""
Tests for Telegram Mini-App init data verification.
"""

import json
import time
from urllib.parse import urlencode

import pytest

from pageassist.exceptions import AuthenticationError
from pageassist.services.telegram_auth import data_check_string, sign_init_data, verify_init_data

BOT_TOKEN = "123456:test-bot-token"


def signed_init_data(fields: dict[str, str], bot_token: str = BOT_TOKEN) -> str:
    pairs = list(fields.items())
    return urlencode([*pairs, ("hash", sign_init_data(pairs, bot_token))])


class TestDataCheckString:
    def test_sorted_and_hash_excluded(self) -> None:
        pairs = [("user", "{}"), ("hash", "abc"), ("auth_date", "1700000000")]

        assert data_check_string(pairs) == "auth_date=1700000000\nuser={}"


class TestVerifyInitData:
    """Tests for verify_init_data."""

    def test_valid_signature(self) -> None:
        init_data = signed_init_data(
            {
                "auth_date": "1700000000",
                "query_id": "AAF",
                "user": json.dumps({"id": 987654321, "first_name": "Ann"}),
            }
        )

        verified = verify_init_data(init_data, BOT_TOKEN)

        assert verified.telegram_id == "987654321"
        assert verified.auth_date == 1700000000

    def test_without_user_field(self) -> None:
        verified = verify_init_data(signed_init_data({"auth_date": "1700000000"}), BOT_TOKEN)

        assert verified.telegram_id is None

    def test_other_bot_token_rejected(self) -> None:
        init_data = signed_init_data({"auth_date": "1700000000"}, bot_token="999:other")

        with pytest.raises(AuthenticationError, match="Invalid Telegram signature"):
            verify_init_data(init_data, BOT_TOKEN)

    def test_tampered_field_rejected(self) -> None:
        init_data = signed_init_data({"auth_date": "1700000000", "user": '{"id": 1}'})
        tampered = init_data.replace("1700000000", "1800000000")

        with pytest.raises(AuthenticationError):
            verify_init_data(tampered, BOT_TOKEN)

    def test_unsigned_rejected(self) -> None:
        with pytest.raises(AuthenticationError, match="not signed"):
            verify_init_data("auth_date=1700000000", BOT_TOKEN)

    def test_empty_rejected(self) -> None:
        with pytest.raises(AuthenticationError, match="required"):
            verify_init_data("", BOT_TOKEN)

    def test_malformed_user_field(self) -> None:
        init_data = signed_init_data({"user": "not-json"})

        with pytest.raises(AuthenticationError, match="Malformed"):
            verify_init_data(init_data, BOT_TOKEN)


class TestInitDataAge:
    """Tests for the auth_date freshness check."""

    def test_fresh_data_accepted(self) -> None:
        now = int(time.time())
        init_data = signed_init_data({"auth_date": str(now), "user": '{"id": 42}'})

        verified = verify_init_data(init_data, BOT_TOKEN, max_age_seconds=3600)

        assert verified.telegram_id == "42"
        assert verified.auth_date == now

    def test_stale_data_rejected(self) -> None:
        two_days_ago = int(time.time()) - 2 * 86400
        init_data = signed_init_data({"auth_date": str(two_days_ago), "user": '{"id": 42}'})

        with pytest.raises(AuthenticationError, match="expired"):
            verify_init_data(init_data, BOT_TOKEN, max_age_seconds=86400)

    def test_missing_auth_date_rejected(self) -> None:
        init_data = signed_init_data({"user": '{"id": 42}'})

        with pytest.raises(AuthenticationError, match="auth_date"):
            verify_init_data(init_data, BOT_TOKEN, max_age_seconds=86400)

    def test_age_unchecked_without_limit(self) -> None:
        init_data = signed_init_data({"auth_date": "1700000000", "user": '{"id": 42}'})

        assert verify_init_data(init_data, BOT_TOKEN).auth_date == 1700000000
