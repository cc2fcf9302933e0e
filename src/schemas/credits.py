"""Schemas for credit balance endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from src.schemas.generation import CamelModel


class BalanceResponse(CamelModel):
    success: bool = True
    user_id: str
    credits: int


class TransactionItem(CamelModel):
    id: str
    transaction_type: str
    amount: int
    balance_after: int
    related_task_id: Optional[str] = None
    description: str
    created_at: Optional[datetime] = None


class TransactionListResponse(CamelModel):
    success: bool = True
    user_id: str
    items: list[TransactionItem]


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PagedTransactionListResponse(TransactionListResponse):
    pagination: Pagination


class CreditPackageItem(CamelModel):
    id: str
    credits: int
    price_cents: Optional[int] = None


class CreditPackageListResponse(CamelModel):
    success: bool = True
    packages: list[CreditPackageItem]


class UsageResponse(CamelModel):
    success: bool = True
    user_id: str
    current_balance: int
    total_spent: int
    total_purchased: int
    total_refunded: int
    total_bonus: int
    video_generation_count: int
    average_per_video: int
