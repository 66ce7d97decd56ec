"""
Tests for CredentialService.

Registration, login, Telegram login, session tokens and API keys.
"""

import time
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock
from urllib.parse import urlencode
from uuid import uuid4

import jwt
import pytest
from argon2 import PasswordHasher
from sqlalchemy.exc import IntegrityError

from pageassist.config import Settings
from pageassist.db.models import LedgerEntry, User
from pageassist.exceptions import (
    AuthenticationError,
    DuplicateIdentityError,
    ForbiddenError,
    PaymentRequiredError,
    WriteVerificationError,
)
from pageassist.models.api import LedgerKind
from pageassist.models.domain import TelegramProfile
from pageassist.services.credentials import (
    API_KEY_LENGTH,
    API_KEY_LOOKUP_LENGTH,
    JWT_ALGORITHM,
    MAX_API_KEY_ATTEMPTS,
    CredentialService,
    is_api_key,
)
from pageassist.services.telegram_auth import sign_init_data
from tests.conftest import RecordingSession, create_mock_user, make_result, make_settings

hasher = PasswordHasher()


def _telegram_init_data(settings: Settings, auth_date: int | None = None, **fields: str) -> str:
    """Init data signed with the configured bot token, dated now by default."""
    pairs = [("auth_date", str(auth_date if auth_date is not None else int(time.time())))]
    pairs += list(fields.items())
    return urlencode([*pairs, ("hash", sign_init_data(pairs, settings.telegram_bot_token))])


def _user_with_key(service: CredentialService, balance: Decimal = Decimal("1.00")):
    generated = service.generate_api_key()
    user = create_mock_user(
        balance=balance,
        api_key_hash=generated.key_hash,
        api_key_prefix=generated.key_prefix,
    )
    return user, generated.plaintext_key


class TestSecrets:
    """Tests for API key and session token generation."""

    def test_api_key_shape(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)

        generated = service.generate_api_key()

        assert generated.plaintext_key.startswith("oaa_")
        assert len(generated.plaintext_key) == API_KEY_LENGTH
        int(generated.plaintext_key[4:], 16)
        assert generated.key_prefix == generated.plaintext_key[:API_KEY_LOOKUP_LENGTH]
        assert generated.plaintext_key not in generated.key_hash
        assert hasher.verify(generated.key_hash, generated.plaintext_key)

    def test_api_keys_are_unique(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)

        keys = {service.generate_api_key().plaintext_key for _ in range(5)}

        assert len(keys) == 5

    def test_is_api_key(self) -> None:
        assert is_api_key("oaa_0123")
        assert not is_api_key("eyJhbGciOi")

    def test_session_token_round_trip(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)
        user_id = uuid4()

        token = service.create_session_token(user_id)

        assert service.decode_session_token(token) == user_id

    def test_session_token_expires_after_configured_days(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)

        token = service.create_session_token(uuid4())
        payload = jwt.decode(token, test_settings.jwt_secret, algorithms=[JWT_ALGORITHM])

        assert payload["exp"] - payload["iat"] == 7 * 24 * 3600

    def test_expired_token_rejected(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)
        past = datetime.now(UTC) - timedelta(days=8)
        token = jwt.encode(
            {"sub": str(uuid4()), "iat": past, "exp": past + timedelta(days=7)},
            test_settings.jwt_secret,
            algorithm=JWT_ALGORITHM,
        )

        with pytest.raises(AuthenticationError, match="Token expired"):
            service.decode_session_token(token)

    def test_foreign_signature_rejected(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        token = jwt.encode(
            {"sub": str(uuid4()), "exp": datetime.now(UTC) + timedelta(days=1)},
            "another-secret-that-is-at-least-32-chars",
            algorithm=JWT_ALGORITHM,
        )

        with pytest.raises(AuthenticationError, match="Invalid token"):
            service.decode_session_token(token)

    def test_token_without_subject_rejected(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        token = jwt.encode(
            {"exp": datetime.now(UTC) + timedelta(days=1)},
            test_settings.jwt_secret,
            algorithm=JWT_ALGORITHM,
        )

        with pytest.raises(AuthenticationError):
            service.decode_session_token(token)


class TestRegister:
    """Tests for email registration."""

    async def test_new_user_gets_welcome_bonus(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        """a@b.com/secret1 starts at 1.00 with one top-up entry of 1.00."""
        recording = RecordingSession(db_session)
        service = CredentialService(db_session, test_settings)

        auth = await service.register("a@b.com", "secret1")

        assert auth.user.email == "a@b.com"
        assert auth.user.balance == Decimal("1.00")
        assert hasher.verify(auth.user.password_hash, "secret1")
        assert service.decode_session_token(auth.token) == auth.user.id

        [entry] = recording.added_of(LedgerEntry)
        assert entry.kind == LedgerKind.TOPUP
        assert entry.amount == Decimal("1.00")
        assert entry.balance_after == Decimal("1.00")
        assert entry.user_id == auth.user.id
        db_session.commit.assert_awaited_once()

    async def test_email_is_normalized(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        RecordingSession(db_session)
        service = CredentialService(db_session, test_settings)

        auth = await service.register("  Someone@Example.COM ", "secret1")

        assert auth.user.email == "someone@example.com"

    async def test_zero_bonus_writes_no_entry(self, db_session: AsyncMock) -> None:
        recording = RecordingSession(db_session)
        service = CredentialService(db_session, make_settings(welcome_bonus=Decimal("0")))

        auth = await service.register("a@b.com", "secret1")

        assert auth.user.balance == Decimal("0")
        assert recording.added_of(LedgerEntry) == []

    async def test_existing_email_rejected(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=create_mock_user()))
        service = CredentialService(db_session, test_settings)

        with pytest.raises(DuplicateIdentityError):
            await service.register("user@example.com", "secret1")

        db_session.add.assert_not_called()

    async def test_concurrent_duplicate_insert(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        db_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))
        service = CredentialService(db_session, test_settings)

        with pytest.raises(DuplicateIdentityError):
            await service.register("a@b.com", "secret1")

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_called()


class TestLogin:
    """Tests for email login."""

    async def test_valid_credentials(self, db_session: AsyncMock, test_settings: Settings) -> None:
        user = create_mock_user(email="a@b.com", password_hash=hasher.hash("secret1"))
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        service = CredentialService(db_session, test_settings)

        auth = await service.login("A@B.com", "secret1")

        assert auth.user is user
        assert service.decode_session_token(auth.token) == user.id

    async def test_wrong_password(self, db_session: AsyncMock, test_settings: Settings) -> None:
        user = create_mock_user(email="a@b.com", password_hash=hasher.hash("secret1"))
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        service = CredentialService(db_session, test_settings)

        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            await service.login("a@b.com", "wrong-password")

    async def test_unknown_email(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)

        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            await service.login("nobody@b.com", "secret1")

    async def test_telegram_only_user_cannot_password_login(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        user = create_mock_user(email="a@b.com", password_hash=None, telegram_id="42")
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        service = CredentialService(db_session, test_settings)

        with pytest.raises(AuthenticationError):
            await service.login("a@b.com", "secret1")

    async def test_blocked_user(self, db_session: AsyncMock, test_settings: Settings) -> None:
        user = create_mock_user(
            email="a@b.com", password_hash=hasher.hash("secret1"), is_blocked=True
        )
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        service = CredentialService(db_session, test_settings)

        with pytest.raises(ForbiddenError):
            await service.login("a@b.com", "secret1")


class TestTelegramLogin:
    """Tests for Telegram Mini-App login."""

    async def test_first_login_creates_user_with_bonus(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        recording = RecordingSession(db_session)
        service = CredentialService(db_session, test_settings)

        auth = await service.telegram_login(
            "777", TelegramProfile(first_name="Ivan", username="ivan_seller")
        )

        [user] = recording.added_of(User)
        assert auth.user is user
        assert user.telegram_id == "777"
        assert user.first_name == "Ivan"
        assert user.username == "ivan_seller"
        assert user.balance == Decimal("1.00")
        assert len(recording.added_of(LedgerEntry)) == 1

    async def test_returning_user_profile_updated(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        user = create_mock_user(email=None, telegram_id="777")
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        service = CredentialService(db_session, test_settings)

        auth = await service.telegram_login("777", TelegramProfile(first_name="Pyotr"))

        assert auth.user is user
        assert user.first_name == "Pyotr"
        db_session.add.assert_not_called()
        db_session.commit.assert_awaited_once()

    async def test_blocked_telegram_user(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        user = create_mock_user(email=None, telegram_id="777", is_blocked=True)
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        service = CredentialService(db_session, test_settings)

        with pytest.raises(ForbiddenError):
            await service.telegram_login("777", TelegramProfile())

    async def test_verified_init_data_accepted(self, db_session: AsyncMock) -> None:
        settings = make_settings(telegram_verify_init_data=True)
        user = create_mock_user(email=None, telegram_id="777")
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        init_data = _telegram_init_data(settings, user='{"id": 777}')
        service = CredentialService(db_session, settings)

        auth = await service.telegram_login("777", TelegramProfile(), init_data=init_data)

        assert auth.user is user

    async def test_init_data_for_other_identity_rejected(self, db_session: AsyncMock) -> None:
        settings = make_settings(telegram_verify_init_data=True)
        init_data = _telegram_init_data(settings, user='{"id": 999}')
        service = CredentialService(db_session, settings)

        with pytest.raises(AuthenticationError, match="mismatch"):
            await service.telegram_login("777", TelegramProfile(), init_data=init_data)

    async def test_missing_init_data_rejected_when_required(
        self, db_session: AsyncMock
    ) -> None:
        service = CredentialService(db_session, make_settings(telegram_verify_init_data=True))

        with pytest.raises(AuthenticationError):
            await service.telegram_login("777", TelegramProfile())

    async def test_init_data_without_user_rejected(self, db_session: AsyncMock) -> None:
        settings = make_settings(telegram_verify_init_data=True)
        service = CredentialService(db_session, settings)

        with pytest.raises(AuthenticationError, match="no user"):
            await service.telegram_login(
                "777", TelegramProfile(), init_data=_telegram_init_data(settings)
            )

        db_session.execute.assert_not_called()

    async def test_stale_init_data_rejected(self, db_session: AsyncMock) -> None:
        settings = make_settings(
            telegram_verify_init_data=True, telegram_init_data_max_age_seconds=3600
        )
        init_data = _telegram_init_data(
            settings, auth_date=int(time.time()) - 7200, user='{"id": 777}'
        )
        service = CredentialService(db_session, settings)

        with pytest.raises(AuthenticationError, match="expired"):
            await service.telegram_login("777", TelegramProfile(), init_data=init_data)

        db_session.execute.assert_not_called()


class TestApiKeys:
    """Tests for API key issuance and resolution."""

    async def test_issue_replaces_previous_key(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        user, old_key = _user_with_key(service)

        generated = await service.issue_api_key(user)

        assert generated.plaintext_key != old_key
        assert user.api_key_prefix == generated.key_prefix
        assert hasher.verify(user.api_key_hash, generated.plaintext_key)
        db_session.commit.assert_awaited_once()

    async def test_taken_prefix_regenerates_key(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        user, _ = _user_with_key(service)
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=uuid4()), make_result(scalar=None)]
        )

        generated = await service.issue_api_key(user)

        assert db_session.execute.await_count == 2
        first_prefix = db_session.execute.await_args_list[0].args[0].compile().params
        assert generated.key_prefix not in first_prefix.values()
        assert user.api_key_prefix == generated.key_prefix
        db_session.commit.assert_awaited_once()

    async def test_prefix_claimed_at_commit_regenerates_key(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        user, _ = _user_with_key(service)
        db_session.commit = AsyncMock(
            side_effect=[IntegrityError("UPDATE users", {}, Exception("duplicate key")), None]
        )

        generated = await service.issue_api_key(user)

        assert user.api_key_prefix == generated.key_prefix
        assert hasher.verify(user.api_key_hash, generated.plaintext_key)
        assert db_session.commit.await_count == 2
        db_session.rollback.assert_awaited_once()
        db_session.refresh.assert_awaited_once_with(user)

    async def test_no_free_prefix(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)
        user, _ = _user_with_key(service)
        db_session.execute = AsyncMock(return_value=make_result(scalar=uuid4()))

        with pytest.raises(WriteVerificationError):
            await service.issue_api_key(user)

        assert db_session.execute.await_count == MAX_API_KEY_ATTEMPTS
        db_session.commit.assert_not_called()

    async def test_resolve_valid_key(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)
        user, api_key = _user_with_key(service)
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))

        assert await service.resolve_api_key(api_key) is user

    async def test_malformed_key(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)

        with pytest.raises(AuthenticationError, match="format"):
            await service.resolve_api_key("oaa_short")

        db_session.execute.assert_not_called()

    async def test_unknown_prefix(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)

        with pytest.raises(AuthenticationError, match="Invalid API key"):
            await service.resolve_api_key("oaa_" + "0" * 32)

    async def test_prefix_match_with_wrong_secret(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        user, api_key = _user_with_key(service)
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        forged = api_key[:API_KEY_LOOKUP_LENGTH] + "f" * (API_KEY_LENGTH - API_KEY_LOOKUP_LENGTH)
        if forged == api_key:
            padding = "e" * (API_KEY_LENGTH - API_KEY_LOOKUP_LENGTH)
            forged = api_key[:API_KEY_LOOKUP_LENGTH] + padding

        with pytest.raises(AuthenticationError, match="Invalid API key"):
            await service.resolve_api_key(forged)

    async def test_blocked_key_owner(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)
        user, api_key = _user_with_key(service)
        user.is_blocked = True
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))

        with pytest.raises(ForbiddenError):
            await service.resolve_api_key(api_key)

    async def test_empty_balance_requires_payment(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        user, api_key = _user_with_key(service, balance=Decimal("0"))
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))

        with pytest.raises(PaymentRequiredError) as exc_info:
            await service.resolve_api_key(api_key)

        assert exc_info.value.status_code == 402
        assert exc_info.value.extra() == {"balance": 0.0}

    async def test_bearer_dispatch(self, db_session: AsyncMock, test_settings: Settings) -> None:
        service = CredentialService(db_session, test_settings)
        user, api_key = _user_with_key(service)
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        db_session.get = AsyncMock(return_value=user)

        assert await service.resolve_bearer_credential(api_key) is user
        token = service.create_session_token(user.id)
        assert await service.resolve_bearer_credential(token) is user

    async def test_session_token_for_missing_user(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        service = CredentialService(db_session, test_settings)
        token = service.create_session_token(uuid4())

        with pytest.raises(AuthenticationError, match="User not found"):
            await service.resolve_session_token(token)

    async def test_session_token_ignores_balance(
        self, db_session: AsyncMock, test_settings: Settings
    ) -> None:
        """The payment guard only applies to API keys."""
        user = create_mock_user(balance=Decimal("0"))
        db_session.get = AsyncMock(return_value=user)
        service = CredentialService(db_session, test_settings)

        resolved = await service.resolve_session_token(service.create_session_token(user.id))

        assert resolved is user
