"""
Admin API routes for managing users and balances.

Protected by session token plus the admin capability.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pageassist.api.dependencies import require_admin
from pageassist.api.serializers import admin_ledger_entry_response, user_response
from pageassist.db.models import User
from pageassist.db.session import get_read_db, get_write_db
from pageassist.models.api import (
    AdminStatsResponse,
    AdminTopupByEmailRequest,
    AdminTopupRequest,
    AdminTopupResponse,
    AdminTransactionListResponse,
    AdminUserListResponse,
    BlockUserRequest,
    SuccessResponse,
)
from pageassist.services.admin import RECENT_USERS_LIMIT, AdminService
from pageassist.services.ledger import LedgerService
from pageassist.services.pricing import present_amount

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

ADMIN_TOPUP_DESCRIPTION = "Top-up by administrator"


def _amount(value: float) -> Decimal:
    """Request floats become exact decimals via their shortest repr."""
    return Decimal(str(value))


@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AdminStatsResponse:
    """Totals plus the newest users."""
    service = AdminService(db)
    totals = await service.totals()
    recent = await service.recent_users(limit=RECENT_USERS_LIMIT)
    return AdminStatsResponse(
        total_users=totals.total_users,
        total_balance=present_amount(totals.total_balance),
        total_revenue=present_amount(totals.total_revenue),
        active_today=totals.active_today,
        recent_users=[user_response(user) for user in recent],
    )


@router.get("/users", response_model=AdminUserListResponse)
async def list_users(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AdminUserListResponse:
    """The 100 newest users."""
    users = await AdminService(db).recent_users()
    return AdminUserListResponse(users=[user_response(user) for user in users])


@router.get("/transactions", response_model=AdminTransactionListResponse)
async def list_transactions(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> AdminTransactionListResponse:
    """The 100 newest ledger entries across all users."""
    rows = await AdminService(db).recent_transactions()
    return AdminTransactionListResponse(
        transactions=[admin_ledger_entry_response(entry, owner) for entry, owner in rows]
    )


@router.post("/topup", response_model=AdminTopupResponse)
async def topup(
    request: AdminTopupRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AdminTopupResponse:
    """Credit a user's balance."""
    applied = await LedgerService(db).credit(
        request.user_id, _amount(request.amount), ADMIN_TOPUP_DESCRIPTION
    )
    await db.commit()

    logger.info(
        "admin_topup",
        user_id=str(request.user_id),
        amount=str(applied.amount),
        admin_id=str(admin.id),
    )
    return AdminTopupResponse(new_balance=present_amount(applied.balance_after))


@router.post("/topup-by-email", response_model=AdminTopupResponse)
async def topup_by_email(
    request: AdminTopupByEmailRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> AdminTopupResponse:
    """Credit the balance of the user with this email."""
    user = await AdminService(db).find_user_by_email(request.email)
    applied = await LedgerService(db).credit(
        user.id, _amount(request.amount), ADMIN_TOPUP_DESCRIPTION
    )
    await db.commit()

    logger.info(
        "admin_topup",
        user_id=str(user.id),
        amount=str(applied.amount),
        admin_id=str(admin.id),
    )
    return AdminTopupResponse(new_balance=present_amount(applied.balance_after))


@router.post("/block-user", response_model=SuccessResponse)
async def block_user(
    request: BlockUserRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> SuccessResponse:
    """Block or unblock an account."""
    await AdminService(db).set_blocked(request.user_id, request.block, admin.id)
    return SuccessResponse()
