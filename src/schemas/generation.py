"""Schemas for video generation endpoints (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateRequest(CamelModel):
    prompt: Optional[str] = None
    triggers: list[str] = Field(default_factory=list)
    duration: int = 5
    quality: str = "720p"
    aspect_ratio: str = "16:9"
    image_url: Optional[str] = None
    provider: Optional[str] = None


class GenerateResponse(CamelModel):
    success: bool = True
    task_id: str
    status: str
    provider: str
    credits_deducted: int
    remaining_credits: int
    estimated_time: int


class ErrorResponse(CamelModel):
    success: bool = False
    error: str
    message: str
    details: Optional[dict] = None


class VideoResult(CamelModel):
    video_url: str
    thumbnail_url: Optional[str] = None
    resolution: Optional[str] = None


class StatusResponse(CamelModel):
    success: bool = True
    task_id: str
    status: str
    progress: int
    provider: str
    result: Optional[VideoResult] = None
    error: Optional[str] = None
    credits_refunded: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RefundRequest(CamelModel):
    task_id: str = Field(min_length=1, max_length=128)


class RefundResponse(CamelModel):
    success: bool = True
    task_id: str
    refunded_credits: int
    new_balance: int
    already_refunded: bool = False


class TaskListItem(CamelModel):
    task_id: str
    status: str
    provider: str
    credit_cost: int
    failure_reason: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskListResponse(CamelModel):
    success: bool = True
    items: list[TaskListItem]


class TaskDeleteResponse(CamelModel):
    success: bool
    task_id: str
