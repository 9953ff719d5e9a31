"""Guide and tagging schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class GuideCreate(BaseModel):
    """Request schema for POST /api/guides."""

    title: str = Field(..., min_length=1, max_length=255)
    text: str | None = Field(default=None, max_length=20000)
    image_url: str | None = Field(default=None, max_length=1024)
    image_formats: dict[str, Any] | None = Field(
        default=None,
        description="Renditions keyed by name (thumbnail, small, medium, large), each {url}.",
    )
    tags: list[str] = Field(default_factory=list, max_length=50)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = "Title cannot be empty or whitespace only"
            raise ValueError(msg)
        return v


class GuideResponse(BaseModel):
    """A stored guide."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    owner_id: uuid.UUID
    title: str
    text: str | None
    image_url: str | None
    tags: list[str]
    created_at: datetime


class TagPreviewRequest(BaseModel):
    """Request schema for POST /api/guides/tags/preview."""

    title: str | None = Field(default=None, max_length=255)
    text: str | None = Field(default=None, max_length=20000)
    image_url: str | None = Field(default=None, max_length=1024)
    image_formats: dict[str, Any] | None = None
    tags: list[str] = Field(default_factory=list, max_length=50)


class TagPreviewResponse(BaseModel):
    tags: list[str]


class BatchTagRequest(BaseModel):
    """Request schema for POST /api/guides/tags/batch."""

    force_update: bool = False
    batch_size: int = Field(default=5, ge=1, le=20)
    delay_seconds: float = Field(default=1.0, ge=0, le=30)


class BatchTagResponse(BaseModel):
    processed: int
    errors: int
    skipped: int
