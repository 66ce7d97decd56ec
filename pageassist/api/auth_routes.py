"""
Auth API routes - registration, login and API key issuance.
"""

from fastapi import APIRouter, Depends, status
from structlog import get_logger

from pageassist.api.dependencies import get_credential_service, get_current_user
from pageassist.api.serializers import user_response
from pageassist.db.models import User
from pageassist.models.api import (
    ApiKeyResponse,
    AuthResponse,
    LoginRequest,
    MeResponse,
    RegisterRequest,
    TelegramAuthRequest,
)
from pageassist.models.domain import TelegramProfile
from pageassist.services.credentials import CredentialService

logger = get_logger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    service: CredentialService = Depends(get_credential_service),
) -> AuthResponse:
    """
    Create an email/password account.

    New accounts receive the welcome bonus as a top-up ledger entry.
    """
    auth = await service.register(request.email, request.password)
    return AuthResponse(token=auth.token, user=user_response(auth.user))


@router.post("/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    service: CredentialService = Depends(get_credential_service),
) -> AuthResponse:
    """Exchange email and password for a session token."""
    auth = await service.login(request.email, request.password)
    return AuthResponse(token=auth.token, user=user_response(auth.user))


@router.post("/telegram", response_model=AuthResponse)
async def telegram_login(
    request: TelegramAuthRequest,
    service: CredentialService = Depends(get_credential_service),
) -> AuthResponse:
    """Log in from the Telegram Mini-App, creating the account on first sight."""
    auth = await service.telegram_login(
        request.telegram_id,
        TelegramProfile(
            first_name=request.first_name,
            last_name=request.last_name,
            username=request.username,
        ),
        init_data=request.init_data,
    )
    return AuthResponse(token=auth.token, user=user_response(auth.user))


@router.post("/api-key", response_model=ApiKeyResponse)
async def create_api_key(
    user: User = Depends(get_current_user),
    service: CredentialService = Depends(get_credential_service),
) -> ApiKeyResponse:
    """
    Issue a new API key, invalidating the previous one.

    The plaintext key appears only in this response.
    """
    generated = await service.issue_api_key(user)
    return ApiKeyResponse(api_key=generated.plaintext_key)


@router.get("/me", response_model=MeResponse)
async def get_me(user: User = Depends(get_current_user)) -> MeResponse:
    """Current profile."""
    return MeResponse(user=user_response(user))
