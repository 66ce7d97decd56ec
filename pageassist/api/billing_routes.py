"""
Billing API routes - balance, usage history and period stats.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pageassist.api.dependencies import get_api_key_user, get_current_user
from pageassist.api.serializers import ledger_entry_response
from pageassist.config import Settings, get_settings
from pageassist.db.models import User
from pageassist.db.session import get_read_db
from pageassist.models.api import (
    BalanceResponse,
    MonthlyUsage,
    PeriodUsage,
    TopupInstructionsResponse,
    UsageResponse,
    UsageStatsResponse,
)
from pageassist.models.domain import PeriodStats
from pageassist.services.ledger import LedgerService
from pageassist.services.pricing import present_amount

router = APIRouter(prefix="/billing", tags=["billing"])


def _period(stats: PeriodStats) -> PeriodUsage:
    return PeriodUsage(spent=present_amount(stats.spent), requests=stats.requests)


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user: User = Depends(get_api_key_user),
    settings: Settings = Depends(get_settings),
) -> BalanceResponse:
    """Current balance of the API key owner."""
    return BalanceResponse(
        balance=present_amount(user.balance),
        currency=settings.currency,
        email=user.email,
    )


@router.get("/usage", response_model=UsageResponse)
async def get_usage(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_api_key_user),
    db: AsyncSession = Depends(get_read_db),
) -> UsageResponse:
    """
    Ledger entries, newest first, with the current month's usage aggregate.

    Read-only operation - uses read replica if configured.
    """
    summary = await LedgerService(db).usage_summary(user.id, limit=limit, offset=offset)
    return UsageResponse(
        transactions=[ledger_entry_response(entry) for entry in summary.entries],
        stats=MonthlyUsage(
            monthly_spent=present_amount(summary.monthly_spent),
            monthly_requests=summary.monthly_requests,
        ),
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=UsageStatsResponse)
async def get_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> UsageStatsResponse:
    """Spend for today, the last 7 days and this month."""
    stats = await LedgerService(db).usage_stats(user.id)
    return UsageStatsResponse(
        balance=present_amount(stats.balance),
        today=_period(stats.today),
        week=_period(stats.week),
        month=_period(stats.month),
        total_messages=stats.total_messages,
    )


@router.post("/topup", response_model=TopupInstructionsResponse)
async def request_topup(user: User = Depends(get_current_user)) -> TopupInstructionsResponse:
    """Payment processing is not integrated; top-ups are applied by an administrator."""
    return TopupInstructionsResponse(
        message="Online payment is not available yet. Contact support to top up your balance.",
        current_balance=present_amount(user.balance),
    )
