from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..models.results import (
    GracePeriodStatus,
    GrantResult,
    LimitDecision,
    TickResult,
    UsageAction,
    UsageSummary,
)
from ..models.reward import CompletionEvent
from ..services.engine import ShareCreditsEngine

router = APIRouter(prefix="/share-credits", tags=["share-credits"])


class PaymentWebhookRequest(BaseModel):
    user_id: str


class PaymentSucceededResponse(BaseModel):
    user_id: str
    grace_period_cleared: bool


class BalanceResponse(BaseModel):
    user_id: str
    exam_share_credits: int
    practice_share_credits: int
    period: str


def get_engine(request: Request) -> ShareCreditsEngine:
    """Engine stored on the app by `create_app`; override in tests."""
    return request.app.state.engine


@router.post("/webhooks/payment-failed", response_model=GracePeriodStatus)
async def payment_failed(
    payload: PaymentWebhookRequest,
    engine: ShareCreditsEngine = Depends(get_engine),
) -> GracePeriodStatus:
    return await engine.on_payment_failed(payload.user_id)


@router.post("/webhooks/payment-succeeded", response_model=PaymentSucceededResponse)
async def payment_succeeded(
    payload: PaymentWebhookRequest,
    engine: ShareCreditsEngine = Depends(get_engine),
) -> PaymentSucceededResponse:
    cleared = await engine.on_payment_succeeded(payload.user_id)
    return PaymentSucceededResponse(user_id=payload.user_id, grace_period_cleared=cleared)


@router.post("/completions", response_model=GrantResult)
async def record_completion(
    event: CompletionEvent,
    engine: ShareCreditsEngine = Depends(get_engine),
) -> GrantResult:
    return await engine.on_completion(event)


@router.post("/tick", response_model=TickResult)
async def run_tick(engine: ShareCreditsEngine = Depends(get_engine)) -> TickResult:
    return await engine.tick()


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str, engine: ShareCreditsEngine = Depends(get_engine)
) -> BalanceResponse:
    balance = await engine.get_balance(user_id)
    return BalanceResponse(
        user_id=user_id,
        exam_share_credits=balance.exam_share_credits,
        practice_share_credits=balance.practice_share_credits,
        period=balance.last_reset_period,
    )


@router.get("/users/{user_id}/limits/{action}", response_model=LimitDecision)
async def check_limit(
    user_id: str,
    action: UsageAction,
    engine: ShareCreditsEngine = Depends(get_engine),
) -> LimitDecision:
    return await engine.can_perform(user_id, action)


@router.get("/users/{user_id}/usage", response_model=UsageSummary)
async def get_usage(
    user_id: str, engine: ShareCreditsEngine = Depends(get_engine)
) -> UsageSummary:
    return await engine.usage_summary(user_id)


@router.get("/users/{user_id}/grace-period", response_model=GracePeriodStatus)
async def get_grace_period(
    user_id: str, engine: ShareCreditsEngine = Depends(get_engine)
) -> GracePeriodStatus:
    return await engine.grace_status(user_id)
