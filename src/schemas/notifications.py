"""Schemas for provider callback ingress."""

from __future__ import annotations

from pydantic import BaseModel


class CallbackAck(BaseModel):
    status: str = "received"
