"""
FastAPI Dependencies - Authentication, authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Routes declare the credential they accept:
- ``get_current_user``: session token (Authorization: Bearer <jwt>)
- ``get_api_key_user``: API key (X-API-Key, or Authorization: Bearer oaa_...)
- ``require_admin``: session token plus the admin capability
"""

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.config import Settings, get_settings
from pageassist.db.models import User
from pageassist.db.session import get_write_db
from pageassist.exceptions import AuthenticationError, ForbiddenError
from pageassist.services.chat import ChatOrchestrator
from pageassist.services.credentials import CredentialService, is_api_key
from pageassist.services.llm_gateway import AnthropicGateway, ChatCompletionGateway

logger = get_logger(__name__)

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

_llm_gateway: AnthropicGateway | None = None


def get_llm_gateway() -> ChatCompletionGateway:
    """Process-wide LLM gateway (one pooled HTTP client)."""
    global _llm_gateway
    if _llm_gateway is None:
        _llm_gateway = AnthropicGateway(get_settings())
    return _llm_gateway


async def close_llm_gateway() -> None:
    """Close the gateway HTTP client (for graceful shutdown)."""
    global _llm_gateway
    if _llm_gateway is not None:
        await _llm_gateway.aclose()
        _llm_gateway = None


def get_credential_service(
    db: AsyncSession = Depends(get_write_db),
    settings: Settings = Depends(get_settings),
) -> CredentialService:
    """Credential service bound to the request's write session."""
    return CredentialService(db, settings)


def get_chat_orchestrator(
    db: AsyncSession = Depends(get_write_db),
    settings: Settings = Depends(get_settings),
    gateway: ChatCompletionGateway = Depends(get_llm_gateway),
) -> ChatOrchestrator:
    """Chat orchestrator bound to the request's write session."""
    return ChatOrchestrator(db, settings, gateway)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: CredentialService = Depends(get_credential_service),
) -> User:
    """
    Resolve the session token from the Authorization header.

    Raises:
        AuthenticationError: Missing or invalid token (401)
        ForbiddenError: Blocked account (403)
    """
    if credentials is None:
        raise AuthenticationError("Authorization required")
    return await service.resolve_session_token(credentials.credentials)


async def get_api_key_user(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: CredentialService = Depends(get_credential_service),
) -> User:
    """
    Resolve the API key from X-API-Key, falling back to an ``oaa_`` bearer.

    Raises:
        AuthenticationError: Missing, malformed or unknown key (401)
        ForbiddenError: Blocked account (403)
        PaymentRequiredError: Balance is zero or below (402)
    """
    api_key = x_api_key
    if not api_key and credentials is not None and is_api_key(credentials.credentials):
        api_key = credentials.credentials

    if not api_key:
        raise AuthenticationError("API key required")

    return await service.resolve_api_key(api_key)


def ensure_admin(user: User) -> User:
    """
    Capability check for admin routes.

    Raises:
        ForbiddenError: User lacks the admin flag
    """
    if not user.is_admin:
        logger.warning("admin_access_denied", user_id=str(user.id))
        raise ForbiddenError("Admin access required")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Session-token user that holds the admin capability."""
    return ensure_admin(user)
