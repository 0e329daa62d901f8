from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import (
    String,
    Text,
    Boolean,
    DateTime,
    Integer,
    Index,
    PrimaryKeyConstraint,
    false as sa_false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class MedicationScheduleModel(Base):
    """
    Persisted medication schedule and its reminder cursor.

    - id: str # stable course identifier
    - owner_id: str # reminder recipient
    - recurrence_kind: str # 'daily-fixed-time' | 'custom-times-per-day' | 'fixed-interval-hours'
    - recurrence_params: dict # kind-specific params, json
    - window_start / window_end: datetime # course boundary, end exclusive
    - next_fire_at: datetime # next unprocessed occurrence, NULL when inactive
    - last_fired_at: datetime # most recently processed occurrence (idempotency token)
    - is_active: bool # false once the course ended or the rule failed
    - display_label: str # medication name shown in the reminder
    - advance_count: int # occurrences processed
    - deactivated_reason: str # why the schedule stopped, if it did
    """

    __tablename__ = 'dosewatch_schedules'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    recurrence_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    recurrence_params: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )
    window_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    window_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_fire_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_fired_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text('true')
    )
    display_label: Mapped[str] = mapped_column(Text, nullable=False, default='')
    advance_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deactivated_reason: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    __table_args__ = (
        # Due-set range scan only touches active rows
        Index(
            'idx_dosewatch_schedules_due',
            'next_fire_at',
            postgresql_where=text('is_active'),
        ),
    )


class RecipientEndpointModel(Base):
    """
    One delivery endpoint (device push token) registered for a recipient.

    - owner_id: str # recipient
    - endpoint_id: str # device/installation identifier, unique per owner
    - address: str # transport address, e.g. push token
    """

    __tablename__ = 'dosewatch_endpoints'

    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    endpoint_id: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )

    __table_args__ = (PrimaryKeyConstraint('owner_id', 'endpoint_id'),)


class NotificationRecordModel(Base):
    """
    Delivered notification, the source of truth for a recipient's inbox.

    Written once per dispatched message, whatever the per-endpoint outcome.
    """

    __tablename__ = 'dosewatch_notifications'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    related_collection: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    is_read: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )

    __table_args__ = (
        Index('idx_dosewatch_notifications_owner', 'owner_id', 'delivered_at'),
    )
