"""Credit ledger: atomic balance mutations paired with append-only transactions.

Every mutation is a single conditional ``UPDATE ... RETURNING`` on the account
row followed by the transaction insert, committed together. Balances are never
read into Python and written back.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import case, desc, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.logger import get_logger
from src.storage.models import CreditTransaction, UserAccount


TRANSACTION_PURCHASE = "purchase"
TRANSACTION_USAGE = "usage"
TRANSACTION_REFUND = "refund"
TRANSACTION_BONUS = "bonus"
GRANT_TYPES = {TRANSACTION_PURCHASE, TRANSACTION_BONUS}

logger = get_logger("asmrgen.credits")


class LedgerError(RuntimeError):
    """Raised when the ledger cannot persist a mutation."""


class UserNotFoundError(LookupError):
    """Raised when no credit account exists for the user."""


class InsufficientCreditsError(RuntimeError):
    """Raised when a debit would take the balance below zero."""

    def __init__(self, *, user_id: str, required: int, available: int) -> None:
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits (required={required}, available={available})")


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    user_id: str
    transaction_type: str
    amount: int
    new_balance: int
    transaction_id: Optional[str] = None
    applied: bool = True


@dataclass(frozen=True)
class UsageSummary:
    current_balance: int
    total_spent: int
    total_purchased: int
    total_refunded: int
    total_bonus: int
    video_generation_count: int

    @property
    def average_per_video(self) -> int:
        if self.video_generation_count == 0:
            return 0
        return round(self.total_spent / self.video_generation_count)


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError("amount must be positive")


def _find_by_idempotency_key(session: Session, key: str) -> Optional[CreditTransaction]:
    return session.scalar(select(CreditTransaction).where(CreditTransaction.idempotency_key == key))


def get_balance(session: Session, *, user_id: str) -> int:
    balance = session.scalar(select(UserAccount.credits).where(UserAccount.id == user_id))
    if balance is None:
        raise UserNotFoundError(f"No credit account for user {user_id}")
    return int(balance)


def list_transactions(
    session: Session,
    *,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
) -> List[CreditTransaction]:
    safe_limit = max(1, min(limit, 200))
    statement = (
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(desc(CreditTransaction.created_at), desc(CreditTransaction.id))
        .offset(max(0, offset))
        .limit(safe_limit)
    )
    return list(session.scalars(statement).all())


def count_transactions(session: Session, *, user_id: str) -> int:
    total = session.scalar(
        select(func.count()).select_from(CreditTransaction).where(CreditTransaction.user_id == user_id)
    )
    return int(total or 0)


def summarize_usage(session: Session, *, user_id: str) -> UsageSummary:
    """Aggregate a user's ledger by transaction type."""

    balance = get_balance(session, user_id=user_id)
    rows = session.execute(
        select(
            CreditTransaction.transaction_type,
            func.coalesce(func.sum(CreditTransaction.amount), 0),
            func.count(),
        )
        .where(CreditTransaction.user_id == user_id)
        .group_by(CreditTransaction.transaction_type)
    ).all()
    totals = {transaction_type: (int(amount), int(count)) for transaction_type, amount, count in rows}

    spent, generations = totals.get(TRANSACTION_USAGE, (0, 0))
    return UsageSummary(
        current_balance=balance,
        total_spent=abs(spent),
        total_purchased=totals.get(TRANSACTION_PURCHASE, (0, 0))[0],
        total_refunded=totals.get(TRANSACTION_REFUND, (0, 0))[0],
        total_bonus=totals.get(TRANSACTION_BONUS, (0, 0))[0],
        video_generation_count=generations,
    )


def find_refund_for_task(session: Session, *, related_task_id: str) -> Optional[CreditTransaction]:
    return session.scalar(
        select(CreditTransaction).where(
            CreditTransaction.related_task_id == related_task_id,
            CreditTransaction.transaction_type == TRANSACTION_REFUND,
        )
    )


def debit_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    description: str,
    reference_id: Optional[str] = None,
) -> LedgerResult:
    """Check and decrement the balance in one statement, then append a usage row."""

    _require_positive(amount)
    statement = (
        update(UserAccount)
        .where(UserAccount.id == user_id, UserAccount.credits >= amount)
        .values(
            credits=UserAccount.credits - amount,
            total_credits_spent=UserAccount.total_credits_spent + amount,
            total_videos_created=UserAccount.total_videos_created + 1,
            updated_at=func.now(),
        )
        .returning(UserAccount.credits)
    )
    try:
        new_balance = session.execute(statement).scalar_one_or_none()
        if new_balance is None:
            session.rollback()
            available = session.scalar(select(UserAccount.credits).where(UserAccount.id == user_id))
            if available is None:
                raise UserNotFoundError(f"No credit account for user {user_id}")
            logger.warning("credits_insufficient", user_id=user_id, required=amount, available=int(available))
            raise InsufficientCreditsError(user_id=user_id, required=amount, available=int(available))

        transaction = CreditTransaction(
            user_id=user_id,
            transaction_type=TRANSACTION_USAGE,
            amount=-amount,
            balance_after=int(new_balance),
            reference_id=reference_id,
            description=description[:255],
        )
        session.add(transaction)
        session.commit()
    except (InsufficientCreditsError, UserNotFoundError):
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        raise LedgerError("credit debit could not be persisted") from exc

    logger.info("credits_debited", user_id=user_id, amount=amount, new_balance=int(new_balance))
    return LedgerResult(
        success=True,
        user_id=user_id,
        transaction_type=TRANSACTION_USAGE,
        amount=-amount,
        new_balance=int(new_balance),
        transaction_id=transaction.id,
    )


def refund_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    description: str,
    related_task_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> LedgerResult:
    """Credit back a previous debit at most once per task (or explicit key).

    A repeated call with the same task id returns ``applied=False`` and leaves
    the balance untouched.
    """

    _require_positive(amount)
    if idempotency_key is None:
        if not related_task_id:
            raise ValueError("refund requires related_task_id or idempotency_key")
        idempotency_key = f"refund:{related_task_id}"

    existing = _find_by_idempotency_key(session, idempotency_key)
    if existing is not None:
        return LedgerResult(
            success=True,
            user_id=existing.user_id,
            transaction_type=TRANSACTION_REFUND,
            amount=existing.amount,
            new_balance=get_balance(session, user_id=existing.user_id),
            transaction_id=existing.id,
            applied=False,
        )

    statement = (
        update(UserAccount)
        .where(UserAccount.id == user_id)
        .values(
            credits=UserAccount.credits + amount,
            total_credits_spent=case(
                (UserAccount.total_credits_spent >= amount, UserAccount.total_credits_spent - amount),
                else_=0,
            ),
            updated_at=func.now(),
        )
        .returning(UserAccount.credits)
    )
    try:
        new_balance = session.execute(statement).scalar_one_or_none()
        if new_balance is None:
            session.rollback()
            raise UserNotFoundError(f"No credit account for user {user_id}")

        transaction = CreditTransaction(
            user_id=user_id,
            transaction_type=TRANSACTION_REFUND,
            amount=amount,
            balance_after=int(new_balance),
            related_task_id=related_task_id,
            idempotency_key=idempotency_key,
            description=description[:255],
        )
        session.add(transaction)
        session.commit()
    except UserNotFoundError:
        raise
    except IntegrityError:
        # A concurrent refund for the same key won the insert.
        session.rollback()
        winner = _find_by_idempotency_key(session, idempotency_key)
        if winner is None:
            raise LedgerError("credit refund conflicted without a persisted winner")
        return LedgerResult(
            success=True,
            user_id=winner.user_id,
            transaction_type=TRANSACTION_REFUND,
            amount=winner.amount,
            new_balance=get_balance(session, user_id=winner.user_id),
            transaction_id=winner.id,
            applied=False,
        )
    except SQLAlchemyError as exc:
        session.rollback()
        raise LedgerError("credit refund could not be persisted") from exc

    logger.info(
        "credits_refunded",
        user_id=user_id,
        amount=amount,
        new_balance=int(new_balance),
        related_task_id=related_task_id,
    )
    return LedgerResult(
        success=True,
        user_id=user_id,
        transaction_type=TRANSACTION_REFUND,
        amount=amount,
        new_balance=int(new_balance),
        transaction_id=transaction.id,
    )


def grant_credits(
    session: Session,
    *,
    user_id: str,
    amount: int,
    description: str,
    transaction_type: str = TRANSACTION_PURCHASE,
    idempotency_key: Optional[str] = None,
) -> LedgerResult:
    """Add purchased or bonus credits to an account."""

    _require_positive(amount)
    if transaction_type not in GRANT_TYPES:
        raise ValueError(f"Unsupported grant type: {transaction_type}")

    if idempotency_key is not None:
        existing = _find_by_idempotency_key(session, idempotency_key)
        if existing is not None:
            return LedgerResult(
                success=True,
                user_id=existing.user_id,
                transaction_type=existing.transaction_type,
                amount=existing.amount,
                new_balance=get_balance(session, user_id=existing.user_id),
                transaction_id=existing.id,
                applied=False,
            )

    statement = (
        update(UserAccount)
        .where(UserAccount.id == user_id)
        .values(credits=UserAccount.credits + amount, updated_at=func.now())
        .returning(UserAccount.credits)
    )
    try:
        new_balance = session.execute(statement).scalar_one_or_none()
        if new_balance is None:
            session.rollback()
            raise UserNotFoundError(f"No credit account for user {user_id}")

        transaction = CreditTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=int(new_balance),
            idempotency_key=idempotency_key,
            description=description[:255],
        )
        session.add(transaction)
        session.commit()
    except UserNotFoundError:
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        raise LedgerError("credit grant could not be persisted") from exc

    logger.info("credits_granted", user_id=user_id, amount=amount, new_balance=int(new_balance), kind=transaction_type)
    return LedgerResult(
        success=True,
        user_id=user_id,
        transaction_type=transaction_type,
        amount=amount,
        new_balance=int(new_balance),
        transaction_id=transaction.id,
    )
