from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class VariantResponse(BaseModel):
    name: str
    key: str
    url: str
    width: int
    height: int


class MediaAssetResponse(BaseModel):
    ownerId: str
    assetType: str
    primaryUrl: str
    variants: list[VariantResponse]
    originalKey: str | None = None
    originalUrl: str | None = None
    createdAt: datetime
    discardFailed: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    detail: str
    resetAt: datetime | None = None
