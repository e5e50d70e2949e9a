"""Pydantic schemas for the upload protocol."""

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import Field, field_validator

from media_pipeline.modules.derivatives.schemas import AssetDerivativeSetResponse, CamelModel

MAX_TITLE_LENGTH = 255
MAX_TAG_LENGTH = 50
MAX_TAGS = 20


def normalize_tags(value: Any) -> list[str]:
    """Lower-case, trim and de-duplicate tags, keeping first-seen order.

    Accepts a list or a JSON-encoded list; anything else yields no tags.
    """
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if not isinstance(value, (list, tuple)):
        return []

    seen: set[str] = set()
    tags = []
    for raw in value:
        tag = str(raw).strip().lower()
        if not tag or len(tag) > MAX_TAG_LENGTH or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    return tags[:MAX_TAGS]


class Coordinates(CamelModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


def normalize_coordinates(value: Any) -> Optional[dict]:
    """Keep coordinates only when both are numbers within range."""
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if isinstance(value, Coordinates):
        return value.model_dump()
    if not isinstance(value, dict):
        return None
    try:
        lat = float(value.get("latitude"))
        lng = float(value.get("longitude"))
    except (TypeError, ValueError):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return {"latitude": lat, "longitude": lng}


class IntentRequest(CamelModel):
    """Request for an upload credential."""
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., min_length=1, max_length=255)
    size: int = Field(..., description="Declared size in bytes")


class IntentResponse(CamelModel):
    """Issued upload credential."""
    upload_id: str
    upload_url: str
    upload_key: str
    expires_at: datetime
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)
    max_size: int


class FinalizeMetadata(CamelModel):
    """Caller metadata, normalized and passed back untouched by processing."""
    title: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    location: Optional[str] = None
    camera_model: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def trim_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        return v[:MAX_TITLE_LENGTH]

    @field_validator("category")
    @classmethod
    def trim_category(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Category is required")
        return v

    @field_validator("location", "camera_model")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator("coordinates", mode="before")
    @classmethod
    def drop_invalid_coordinates(cls, v: Any) -> Optional[dict]:
        return normalize_coordinates(v)

    @field_validator("tags", mode="before")
    @classmethod
    def clean_tags(cls, v: Any) -> list[str]:
        return normalize_tags(v)


class FinalizeRequest(CamelModel):
    upload_id: str = Field(..., min_length=1)
    upload_key: str = Field(..., min_length=1)
    metadata: FinalizeMetadata


class FinalizeResponse(CamelModel):
    """``accepted`` is always true; ``derivatives`` is present when processing ran inline."""
    accepted: bool = True
    upload_id: str
    base_id: str
    task_id: Optional[str] = None
    derivatives: Optional[AssetDerivativeSetResponse] = None
    metadata: Optional[FinalizeMetadata] = None
