from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Investor(Base):
    __tablename__ = "investors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    firm_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    relationship_owner: Mapped[str] = mapped_column(String(100), nullable=False)
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    partner_source: Mapped[str | None] = mapped_column(String(200))
    est_value: Mapped[float | None] = mapped_column(Float)
    entry_date: Mapped[date | None] = mapped_column(Date)
    stage_entry_date: Mapped[date | None] = mapped_column(Date)
    last_action_date: Mapped[date | None] = mapped_column(Date)
    allocator_type: Mapped[str | None] = mapped_column(String(50))
    internal_conviction: Mapped[str | None] = mapped_column(String(50))
    internal_priority: Mapped[str | None] = mapped_column(String(50))
    next_action: Mapped[str | None] = mapped_column(Text)
    next_action_date: Mapped[date | None] = mapped_column(Date)
    current_strategy_notes: Mapped[str | None] = mapped_column(Text)
    current_strategy_date: Mapped[date | None] = mapped_column(Date)
    last_strategy_notes: Mapped[str | None] = mapped_column(Text)
    last_strategy_date: Mapped[date | None] = mapped_column(Date)
    key_objection_risk: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)

    contacts: Mapped[list[Contact]] = relationship("Contact", back_populates="investor", cascade="all, delete-orphan")
    activities: Mapped[list[Activity]] = relationship("Activity", back_populates="investor", cascade="all, delete-orphan")
    meetings: Mapped[list[Meeting]] = relationship("Meeting", back_populates="investor", cascade="all, delete-orphan")


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    investor_id: Mapped[str] = mapped_column(String(36), ForeignKey("investors.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(300))
    phone: Mapped[str | None] = mapped_column(String(50))
    title: Mapped[str | None] = mapped_column(String(200))
    notes: Mapped[str | None] = mapped_column(Text)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)

    investor: Mapped[Investor] = relationship("Investor", back_populates="contacts")


class Activity(Base):
    """Append-only audit record on an investor timeline."""
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    investor_id: Mapped[str] = mapped_column(String(36), ForeignKey("investors.id"), nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)  # note | call | email | meeting | stage_change | field_update
    description: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)
    # Set when the activity records an approved AI proposal; makes apply idempotent
    proposal_id: Mapped[str | None] = mapped_column(String(36), index=True)
    created_by: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    investor: Mapped[Investor] = relationship("Investor", back_populates="activities")


class Meeting(Base):
    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    investor_id: Mapped[str] = mapped_column(String(36), ForeignKey("investors.id"), nullable=False, index=True)
    meeting_title: Mapped[str] = mapped_column(String(300), nullable=False)
    meeting_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | processing | completed | failed
    processing_error: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    investor: Mapped[Investor] = relationship("Investor", back_populates="meetings")
