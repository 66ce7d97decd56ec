"""
Credential Service - identities, session tokens and API keys.

NO DICTIONARIES - All data uses typed models/dataclasses.

Two bearer credentials resolve to a user:
- session tokens: HS256 JWT carrying the user id, 7-day expiry by default
- API keys: ``oaa_`` + 32 hex chars, stored as an Argon2id hash and looked up
  by a non-secret 16-character prefix
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.config import Settings
from pageassist.db.models import User
from pageassist.exceptions import (
    AuthenticationError,
    DuplicateIdentityError,
    ForbiddenError,
    PaymentRequiredError,
    WriteVerificationError,
)
from pageassist.models.api import LedgerKind
from pageassist.models.domain import GeneratedApiKey, TelegramProfile
from pageassist.services.ledger import ZERO, LedgerService
from pageassist.services.telegram_auth import verify_init_data

logger = get_logger(__name__)

API_KEY_PREFIX = "oaa_"
API_KEY_LENGTH = len(API_KEY_PREFIX) + 32
API_KEY_LOOKUP_LENGTH = 16
MAX_API_KEY_ATTEMPTS = 5
JWT_ALGORITHM = "HS256"
WELCOME_BONUS_DESCRIPTION = "Welcome bonus"


@dataclass(frozen=True)
class AuthSession:
    """Session token issued for an authenticated user."""

    token: str
    user: User


def is_api_key(credential: str) -> bool:
    """True when the credential has the API key shape."""
    return credential.startswith(API_KEY_PREFIX)


class CredentialService:
    """Service for registration, login and credential resolution."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.settings = settings
        self.password_hasher = PasswordHasher()

    # ========================================================================
    # Secrets
    # ========================================================================

    def generate_api_key(self) -> GeneratedApiKey:
        """
        Generate a new API key.

        Returns:
            GeneratedApiKey with plaintext key (shown once!), prefix and hash
        """
        plaintext_key = f"{API_KEY_PREFIX}{uuid4().hex}"
        return GeneratedApiKey(
            plaintext_key=plaintext_key,
            key_prefix=plaintext_key[:API_KEY_LOOKUP_LENGTH],
            key_hash=self.password_hasher.hash(plaintext_key),
        )

    def _verify_secret(self, stored_hash: str, provided: str) -> bool:
        try:
            return self.password_hasher.verify(stored_hash, provided)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def create_session_token(self, user_id: UUID) -> str:
        """Create a signed session token for the user."""
        now = datetime.now(UTC)
        payload = {
            "sub": str(user_id),
            "iat": now,
            "exp": now + timedelta(days=self.settings.jwt_expire_days),
        }
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=JWT_ALGORITHM)

    def decode_session_token(self, token: str) -> UUID:
        """
        Verify a session token and return the user id it carries.

        Raises:
            AuthenticationError: Bad signature, expired, or malformed
        """
        try:
            payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            logger.warning("session_token_expired")
            raise AuthenticationError("Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning("session_token_invalid", error=str(e))
            raise AuthenticationError("Invalid token") from e

        try:
            return UUID(str(payload["sub"]))
        except (KeyError, ValueError) as e:
            raise AuthenticationError("Invalid token") from e

    # ========================================================================
    # Identity operations
    # ========================================================================

    async def register(self, email: str, password: str) -> AuthSession:
        """
        Create an email/password user with the welcome bonus.

        Raises:
            DuplicateIdentityError: Email already registered
        """
        email = email.strip().lower()
        if await self._find_user_by_email(email) is not None:
            raise DuplicateIdentityError(email)

        user = User(email=email, password_hash=self.password_hasher.hash(password))
        user = await self._create_user_with_bonus(user, identity=email)
        logger.info("user_registered", user_id=str(user.id), method="email")
        return AuthSession(token=self.create_session_token(user.id), user=user)

    async def login(self, email: str, password: str) -> AuthSession:
        """
        Authenticate by email and password.

        Raises:
            AuthenticationError: Unknown email or wrong password
            ForbiddenError: Account is blocked
        """
        user = await self._find_user_by_email(email.strip().lower())
        if user is None or not user.password_hash:
            raise AuthenticationError("Invalid email or password")

        if not self._verify_secret(user.password_hash, password):
            logger.warning("login_password_mismatch", user_id=str(user.id))
            raise AuthenticationError("Invalid email or password")

        if user.is_blocked:
            raise ForbiddenError("Account is blocked")

        logger.info("user_logged_in", user_id=str(user.id), method="email")
        return AuthSession(token=self.create_session_token(user.id), user=user)

    async def telegram_login(
        self,
        telegram_id: str,
        profile: TelegramProfile,
        init_data: str | None = None,
    ) -> AuthSession:
        """
        Log in with a Telegram identity, creating the user on first sight.

        Raises:
            AuthenticationError: Init data verification is on and fails
            ForbiddenError: Account is blocked
        """
        if self.settings.telegram_verify_init_data:
            verified = verify_init_data(
                init_data or "",
                self.settings.telegram_bot_token,
                max_age_seconds=self.settings.telegram_init_data_max_age_seconds,
            )
            if verified.telegram_id is None:
                raise AuthenticationError("Telegram init data has no user")
            if verified.telegram_id != telegram_id:
                raise AuthenticationError("Telegram identity mismatch")

        user = await self._find_user_by_telegram_id(telegram_id)
        if user is None:
            new_user = User(
                telegram_id=telegram_id,
                first_name=profile.first_name,
                last_name=profile.last_name,
                username=profile.username,
            )
            try:
                user = await self._create_user_with_bonus(new_user, identity=telegram_id)
                logger.info("user_registered", user_id=str(user.id), method="telegram")
            except DuplicateIdentityError:
                # Created concurrently by another request
                user = await self._find_user_by_telegram_id(telegram_id)
                if user is None:
                    raise WriteVerificationError(
                        "Telegram user creation failed due to race condition"
                    ) from None
        else:
            user.first_name = profile.first_name
            user.last_name = profile.last_name
            user.username = profile.username
            await self.db.commit()

        if user.is_blocked:
            raise ForbiddenError("Account is blocked")

        logger.info("user_logged_in", user_id=str(user.id), method="telegram")
        return AuthSession(token=self.create_session_token(user.id), user=user)

    async def issue_api_key(self, user: User) -> GeneratedApiKey:
        """
        Generate a key for the user, replacing any previous one.

        A key whose lookup prefix is already taken is regenerated. The
        plaintext is returned once and never logged.

        Raises:
            WriteVerificationError: No free prefix after MAX_API_KEY_ATTEMPTS
        """
        user_id = user.id
        for attempt in range(1, MAX_API_KEY_ATTEMPTS + 1):
            generated = self.generate_api_key()
            if await self._api_key_prefix_taken(generated.key_prefix):
                logger.warning("api_key_prefix_collision", user_id=str(user_id), attempt=attempt)
                continue

            user.api_key_hash = generated.key_hash
            user.api_key_prefix = generated.key_prefix
            try:
                await self.db.commit()
            except IntegrityError:
                # Prefix claimed by a concurrent issuance
                await self.db.rollback()
                await self.db.refresh(user)
                logger.warning("api_key_prefix_collision", user_id=str(user_id), attempt=attempt)
                continue

            logger.info("api_key_issued", user_id=str(user_id))
            return generated

        raise WriteVerificationError(f"No unique API key prefix for user {user_id}")

    async def _api_key_prefix_taken(self, key_prefix: str) -> bool:
        stmt = select(User.id).where(User.api_key_prefix == key_prefix)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    # ========================================================================
    # Credential resolution
    # ========================================================================

    async def resolve_session_token(self, token: str) -> User:
        """
        Resolve a session token to an active user.

        Raises:
            AuthenticationError: Invalid token or unknown user
            ForbiddenError: Account is blocked
        """
        user_id = self.decode_session_token(token)
        user = await self.db.get(User, user_id)
        if user is None:
            raise AuthenticationError("User not found")
        if user.is_blocked:
            raise ForbiddenError("Account is blocked")
        return user

    async def resolve_api_key(self, provided_key: str) -> User:
        """
        Resolve an API key to a paying user.

        Raises:
            AuthenticationError: Malformed, unknown, or mismatched key
            ForbiddenError: Account is blocked
            PaymentRequiredError: Balance is zero or below
        """
        if not is_api_key(provided_key) or len(provided_key) != API_KEY_LENGTH:
            logger.warning("api_key_invalid_format")
            raise AuthenticationError("Invalid API key format")

        key_prefix = provided_key[:API_KEY_LOOKUP_LENGTH]
        stmt = select(User).where(User.api_key_prefix == key_prefix)
        result = await self.db.execute(stmt)
        user = result.scalar_one_or_none()

        if user is None or not user.api_key_hash:
            logger.warning("api_key_not_found")
            raise AuthenticationError("Invalid API key")

        if not self._verify_secret(user.api_key_hash, provided_key):
            logger.warning("api_key_hash_mismatch", user_id=str(user.id))
            raise AuthenticationError("Invalid API key")

        if user.is_blocked:
            raise ForbiddenError("Account is blocked")

        if user.balance <= ZERO:
            raise PaymentRequiredError(user.balance)

        return user

    async def resolve_bearer_credential(self, credential: str) -> User:
        """Resolve either kind of bearer credential."""
        if is_api_key(credential):
            return await self.resolve_api_key(credential)
        return await self.resolve_session_token(credential)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _create_user_with_bonus(self, user: User, identity: str) -> User:
        """Insert the user and credit the welcome bonus in one transaction."""
        user.balance = ZERO
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateIdentityError(identity) from e

        verified_user = await self.db.get(User, user.id)
        if verified_user is None:
            raise WriteVerificationError(f"User {user.id} not found after insert")

        bonus = self.settings.welcome_bonus
        if bonus > ZERO:
            ledger = LedgerService(self.db)
            await ledger.apply_ledger_entry(
                verified_user, LedgerKind.TOPUP, bonus, WELCOME_BONUS_DESCRIPTION
            )

        await self.db.commit()
        return verified_user

    async def _find_user_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_user_by_telegram_id(self, telegram_id: str) -> User | None:
        stmt = select(User).where(User.telegram_id == telegram_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
