"""Credit balance, history, usage and package routes."""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.billing.packages import load_credit_packages
from src.credits.ledger import (
    UserNotFoundError,
    count_transactions,
    get_balance,
    list_transactions,
    summarize_usage,
)
from src.schemas.credits import (
    BalanceResponse,
    CreditPackageItem,
    CreditPackageListResponse,
    PagedTransactionListResponse,
    Pagination,
    TransactionItem,
    UsageResponse,
)
from src.storage.db import get_session


router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=BalanceResponse)
def credit_balance(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> BalanceResponse:
    try:
        credits = get_balance(session, user_id=auth.user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credit account not found") from exc
    return BalanceResponse(user_id=auth.user_id, credits=credits)


@router.get("/transactions", response_model=PagedTransactionListResponse)
def credit_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PagedTransactionListResponse:
    total = count_transactions(session, user_id=auth.user_id)
    items = list_transactions(session, user_id=auth.user_id, limit=limit, offset=(page - 1) * limit)
    total_pages = math.ceil(total / limit)
    return PagedTransactionListResponse(
        user_id=auth.user_id,
        items=[
            TransactionItem(
                id=item.id,
                transaction_type=item.transaction_type,
                amount=item.amount,
                balance_after=item.balance_after,
                related_task_id=item.related_task_id,
                description=item.description,
                created_at=item.created_at,
            )
            for item in items
        ],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@router.get("/usage", response_model=UsageResponse)
def credit_usage(
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> UsageResponse:
    try:
        usage = summarize_usage(session, user_id=auth.user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Credit account not found") from exc
    return UsageResponse(
        user_id=auth.user_id,
        current_balance=usage.current_balance,
        total_spent=usage.total_spent,
        total_purchased=usage.total_purchased,
        total_refunded=usage.total_refunded,
        total_bonus=usage.total_bonus,
        video_generation_count=usage.video_generation_count,
        average_per_video=usage.average_per_video,
    )


@router.get("/packages", response_model=CreditPackageListResponse)
def credit_packages() -> CreditPackageListResponse:
    packages = sorted(load_credit_packages().values(), key=lambda package: package.credits)
    return CreditPackageListResponse(
        packages=[
            CreditPackageItem(id=package.name, credits=package.credits, price_cents=package.price_cents)
            for package in packages
        ]
    )
