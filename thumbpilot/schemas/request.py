"""
API request schemas.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class CreateCampaignRequest(BaseModel):
    """Start an optimization campaign for a published video."""

    user_id: str = Field(..., min_length=1, description="Owning user")
    video_url: str = Field(..., min_length=1, description="Video URL or 11-char id")
    max_iterations: int | None = Field(None, ge=1, le=200)
    iterations_per_day: int | None = Field(None, ge=1, le=24)

    model_config = {
        "json_schema_extra": {
            "example": {
                "user_id": "user_123",
                "video_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
                "max_iterations": 20,
                "iterations_per_day": 5,
            }
        }
    }
