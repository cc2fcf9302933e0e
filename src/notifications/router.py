"""Inbound provider callback routes.

The provider tag in the path selects the payload shape. Every parseable body
is acknowledged with 200 so the provider never retries or disables the hook.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.logger import get_logger
from src.generation.media import process_task_media
from src.generation.service import ingest_notification
from src.providers.normalize import supported_callback_providers
from src.schemas.notifications import CallbackAck
from src.storage.db import get_session
from src.tasks.store import STATE_COMPLETED


router = APIRouter(prefix="/callbacks", tags=["callbacks"])
logger = get_logger("asmrgen.api.callbacks")


@router.post("/kie/{provider}", response_model=CallbackAck)
async def kie_callback(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
) -> CallbackAck:
    normalized_provider = provider.strip().lower()
    if normalized_provider not in supported_callback_providers():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown callback provider")

    body = await request.body()
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        logger.warning("provider_callback_unparseable", provider=normalized_provider, size=len(body))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body") from exc

    ack = ingest_notification(session, provider=normalized_provider, payload=payload, source="webhook")
    logger.info(
        "provider_callback_received",
        provider=normalized_provider,
        task_id=ack.task_id,
        ingest_status=ack.status,
        transitioned=ack.transitioned,
    )

    if ack.transitioned and ack.state == STATE_COMPLETED and ack.task_id and get_settings().media_rehost_enabled:
        background_tasks.add_task(process_task_media, ack.task_id)
    return CallbackAck()
