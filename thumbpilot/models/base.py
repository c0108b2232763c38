"""
Base model and common enums for SQLAlchemy ORM.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    """Primary key default: opaque UUID4 string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""
    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class CampaignStatus(str, Enum):
    """Campaign lifecycle states. Transitions live in thumbpilot.engine.state."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    TESTING = "testing"          # first iteration of the loop
    OPTIMIZING = "optimizing"    # subsequent iterations
    SETTLED = "settled"
    FAILED = "failed"


class RunStatus(str, Enum):
    """OptimizationRun status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunAction(str, Enum):
    """Action recorded on a completed OptimizationRun."""
    SETTLED = "settled"
    GENERATED_VARIATIONS = "generated_variations"


class AssetType(str, Enum):
    """Reference material derived during campaign analysis."""
    FRAME = "frame"
    TRANSCRIPT = "transcript"
    ELEMENT = "element"
