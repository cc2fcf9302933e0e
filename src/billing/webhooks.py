"""Stripe webhook endpoint with idempotent credit grants."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.billing.packages import get_credit_package
from src.billing.stripe_client import (
    CHECKOUT_COMPLETED,
    StripeWebhookError,
    parse_stripe_event,
    verify_stripe_signature,
)
from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.observability import capture_exception
from src.credits.ledger import TRANSACTION_PURCHASE, grant_credits
from src.schemas.billing import StripeWebhookResponse
from src.storage.db import get_session
from src.storage.models import StripeEvent


router = APIRouter(prefix="/billing", tags=["billing"])
logger = get_logger("asmrgen.billing")


def _as_json(payload: bytes) -> str:
    return payload.decode("utf-8")


def _insert_stripe_event(
    session: Session,
    *,
    event_id: str,
    event_type: str,
    payload_json: str,
) -> Tuple[Optional[StripeEvent], bool]:
    stripe_event = StripeEvent(
        id=str(uuid.uuid4()),
        event_id=event_id,
        event_type=event_type,
        status="received",
        payload_json=payload_json,
    )
    session.add(stripe_event)
    try:
        session.commit()
        return stripe_event, False
    except IntegrityError:
        session.rollback()
        return None, True


def _mark_event(
    session: Session,
    event_id: str,
    *,
    final_status: str,
    message: Optional[str],
    user_id: Optional[str] = None,
) -> None:
    stripe_event = session.scalar(select(StripeEvent).where(StripeEvent.event_id == event_id))
    if stripe_event is None:
        return
    stripe_event.status = final_status
    stripe_event.error_message = message[:255] if message else None
    stripe_event.processed_at = datetime.now(timezone.utc)
    if user_id is not None:
        stripe_event.user_id = user_id
    session.commit()


def _apply_checkout_completed(
    session: Session,
    *,
    event_id: str,
    payload: Dict[str, Any],
) -> Tuple[str, str, int, Optional[str]]:
    data = payload.get("data") or {}
    checkout = data.get("object") or {}
    if not isinstance(checkout, dict):
        return "ignored", "Checkout payload is invalid", 0, None

    payment_status = checkout.get("payment_status")
    if payment_status not in (None, "paid", "no_payment_required"):
        return "ignored", f"Checkout not paid: {payment_status}", 0, None

    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("user_id") or checkout.get("client_reference_id")
    package_name = metadata.get("package")
    if not isinstance(user_id, str) or not user_id:
        return "ignored", "Checkout payload missing user_id", 0, None
    if not isinstance(package_name, str) or not package_name:
        return "ignored", "Checkout payload missing package", 0, None

    package = get_credit_package(package_name)
    if package is None:
        return "ignored", f"Unknown credit package: {package_name}", 0, user_id

    grant = grant_credits(
        session,
        user_id=user_id,
        amount=package.credits,
        description=f"Credit package purchase: {package.name}",
        transaction_type=TRANSACTION_PURCHASE,
        idempotency_key=f"stripe:{event_id}",
    )
    granted = package.credits if grant.applied else 0
    return "processed", "Credits granted", granted, user_id


def process_stripe_event(
    session: Session,
    *,
    event: Dict[str, Any],
    payload_bytes: bytes,
) -> StripeWebhookResponse:
    event_id = str(event["id"])
    event_type = str(event["type"])

    stripe_event, duplicate = _insert_stripe_event(
        session,
        event_id=event_id,
        event_type=event_type,
        payload_json=_as_json(payload_bytes),
    )
    if duplicate:
        return StripeWebhookResponse(
            status="duplicate",
            duplicate=True,
            event_id=event_id,
            event_type=event_type,
            message="Event already processed",
        )
    if stripe_event is None:  # pragma: no cover
        raise RuntimeError("Failed to persist Stripe event")

    try:
        if event_type == CHECKOUT_COMPLETED:
            final_status, message, granted, user_id = _apply_checkout_completed(
                session,
                event_id=event_id,
                payload=event,
            )
        else:
            final_status, message, granted, user_id = "ignored", "Unsupported Stripe event type", 0, None

        _mark_event(
            session,
            event_id,
            final_status=final_status,
            message=message if final_status == "ignored" else None,
            user_id=user_id if final_status == "processed" else None,
        )
        logger.info(
            "stripe_event_processed",
            event_id=event_id,
            event_type=event_type,
            status=final_status,
            credits_granted=granted,
        )
        return StripeWebhookResponse(
            status=final_status,
            duplicate=False,
            event_id=event_id,
            event_type=event_type,
            message=message,
            credits_granted=granted,
        )
    except Exception as exc:
        session.rollback()
        capture_exception(exc)
        logger.error("stripe_event_failed", event_id=event_id, event_type=event_type, error=str(exc))
        _mark_event(session, event_id, final_status="failed", message=str(exc))
        return StripeWebhookResponse(
            status="failed",
            duplicate=False,
            event_id=event_id,
            event_type=event_type,
            message="Processing failed",
        )


@router.post("/webhook", response_model=StripeWebhookResponse)
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
) -> StripeWebhookResponse:
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret is not configured",
        )

    payload_bytes = await request.body()
    signature_header = request.headers.get("stripe-signature", "")
    try:
        verify_stripe_signature(
            payload=payload_bytes,
            signature_header=signature_header,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_signature_tolerance_seconds,
        )
        event = parse_stripe_event(payload_bytes)
    except StripeWebhookError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return process_stripe_event(session, event=event, payload_bytes=payload_bytes)
