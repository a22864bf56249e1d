"""Database models for CaptureBot."""
import uuid

from sqlalchemy import (
    String, DateTime, Boolean, Text, Integer, Float,
    ForeignKey, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import mapped_column
from sqlalchemy.sql import func

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


INTEREST_TYPES = ("topic", "tool", "domain", "person", "repo")
REPORT_FREQUENCIES = ("daily", "weekly", "none", "never")


class User(Base):
    """Users and their delivery cadence."""
    __tablename__ = "users"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    display_name = mapped_column(String(200), nullable=True)
    email = mapped_column(String(320), nullable=True)
    timezone = mapped_column(String(64), default="America/Los_Angeles", nullable=False)
    report_frequency = mapped_column(String(16), default="daily", nullable=False)  # daily|weekly|none|never
    report_day = mapped_column(Integer, default=1, nullable=False)  # 0=Sunday .. 6=Saturday
    report_time = mapped_column(String(5), default="07:00", nullable=False)  # HH:MM local
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())


class Item(Base):
    """Captured items, written by the capture pipeline."""
    __tablename__ = "items"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    title = mapped_column(String(800), nullable=True)
    summary = mapped_column(Text, nullable=True)
    domain = mapped_column(String(64), nullable=True)
    content_type = mapped_column(String(32), nullable=True)
    source_url = mapped_column(String(1500), nullable=True)
    status = mapped_column(String(16), default="processed", nullable=False)
    captured_at = mapped_column(DateTime(timezone=True), index=True, nullable=False)


class Container(Base):
    """Named clusters of related items."""
    __tablename__ = "containers"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    name = mapped_column(String(200), nullable=False)
    description = mapped_column(Text, nullable=True)
    item_count = mapped_column(Integer, default=0, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())


class ContainerItem(Base):
    """Membership edge between containers and items."""
    __tablename__ = "container_items"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    container_id = mapped_column(ForeignKey("containers.id", ondelete="CASCADE"), index=True, nullable=False)
    item_id = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), index=True, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("container_id", "item_id", name="uq_container_item"),)


class Interest(Base):
    """Weighted interest graph nodes."""
    __tablename__ = "user_interests"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    interest_type = mapped_column(String(16), nullable=False)  # topic|tool|domain|person|repo
    value = mapped_column(String(300), nullable=False)
    occurrence_count = mapped_column(Integer, default=1, nullable=False)
    first_seen = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    weight = mapped_column(Float, default=0.5, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "interest_type", "value", name="uq_user_interest"),
    )


class Trend(Base):
    """Narrated, expiring trends."""
    __tablename__ = "trends"

    id = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    trend_type = mapped_column(String(32), nullable=False)
    title = mapped_column(String(300), nullable=False)
    description = mapped_column(Text, nullable=True)
    signals = mapped_column(JSON, nullable=True)
    strength = mapped_column(Float, default=0.5, nullable=False)
    detected_at = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    surfaced = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "trend_type", "title", name="uq_trend_identity"),
    )


# Indexes for the detector queries
Index('idx_items_user_captured', Item.user_id, Item.captured_at)
Index('idx_user_interests_user_first_seen', Interest.user_id, Interest.first_seen)
Index('idx_trends_user_expires', Trend.user_id, Trend.expires_at)
