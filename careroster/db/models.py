"""SQLAlchemy async database models for CareRoster.

Uniqueness invariants of the scheduling core live here as table constraints so
that retried or concurrent writes collide in storage instead of duplicating rows.
"""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PatientAddressModel(Base):
    """Registered patient address coordinates (reference data used for geofencing)."""

    __tablename__ = "patient_addresses"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    patient_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    label: Mapped[str | None] = mapped_column(Text)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    is_main: Mapped[bool] = mapped_column(nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class AuthorizationModel(Base):
    """Payer-approved unit budget for one patient service over a date range.

    ``total_used`` is a cached projection of the ledger sum; it is always
    recomputed from ``unit_consumptions`` and never incremented in place.
    """

    __tablename__ = "authorizations"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    patient_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    patient_payer_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    patient_service_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)

    authorization_no: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    format: Mapped[str] = mapped_column(Text, nullable=False, default="units")
    event_code: Mapped[str | None] = mapped_column(Text)

    max_units: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_used: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    comments: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("max_units >= 0", name="check_max_units_non_negative"),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="check_authorization_period"
        ),
        Index("idx_authorizations_patient_period", "patient_id", "start_date", "end_date"),
    )


class UnitConsumptionModel(Base):
    """Immutable ledger entry debiting (or, for adjustments, crediting) an authorization."""

    __tablename__ = "unit_consumptions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    authorization_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("authorizations.id"), nullable=False, index=True
    )
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    units_used: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    __table_args__ = (
        # Posting is exactly-once per source event
        UniqueConstraint("source_type", "source_id", name="uq_consumption_source"),
        Index("idx_consumption_auth_date", "authorization_id", "service_date"),
    )


class ScheduleTemplateModel(Base):
    """Week-rotation template for a patient. One active template per patient."""

    __tablename__ = "schedule_templates"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    patient_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    office_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")

    # Rotation anchor: week 0 starts on this date
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    generated_through: Mapped[date | None] = mapped_column(Date)

    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        Index(
            "idx_template_active_unique",
            "patient_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class TemplateWeekModel(Base):
    __tablename__ = "schedule_template_weeks"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("schedule_templates.id"), nullable=False, index=True
    )
    week_index: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("template_id", "week_index", name="uq_template_week_index"),
        CheckConstraint("week_index >= 0", name="check_week_index_non_negative"),
    )


class TemplateEventModel(Base):
    """Weekday/time slot inside a template week."""

    __tablename__ = "schedule_template_events"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    week_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("schedule_template_weeks.id"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)  # 0=Sunday
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    authorization_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("authorizations.id")
    )
    staff_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    event_code: Mapped[str | None] = mapped_column(Text)
    planned_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comment: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="check_day_of_week"),
        CheckConstraint("end_time > start_time", name="check_template_event_times"),
        CheckConstraint("planned_units >= 0", name="check_planned_units_non_negative"),
        Index("idx_template_events_week_day", "week_id", "day_of_week"),
    )


class ScheduleEventModel(Base):
    """Materialized occurrence of a template slot (or an ad-hoc visit)."""

    __tablename__ = "schedule_events"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    patient_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    office_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))

    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    authorization_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("authorizations.id"), index=True
    )
    staff_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    event_code: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="planned")
    planned_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_units: Mapped[int | None] = mapped_column(Integer)
    comment: Mapped[str | None] = mapped_column(Text)

    source_template_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("schedule_templates.id", ondelete="SET NULL")
    )
    generated_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        # Materialization idempotency key
        UniqueConstraint("patient_id", "event_date", "start_at", name="uq_schedule_event_slot"),
        CheckConstraint("end_at > start_at", name="check_schedule_event_times"),
        Index("idx_schedule_events_patient_date", "patient_id", "event_date"),
        Index("idx_schedule_events_staff_date", "staff_id", "event_date"),
    )


class ServiceDeliveryModel(Base):
    """What actually happened for one occurrence.

    Lifecycle status is not stored; it is derived from check events and the
    cancellation flag (see ``careroster.visits.models.derive_status``).
    """

    __tablename__ = "service_deliveries"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    schedule_event_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("schedule_events.id"), nullable=False, unique=True
    )
    authorization_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("authorizations.id"), index=True
    )
    patient_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)

    # Planned window, copied from the occurrence and never touched by check-in/out
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    total_hours: Mapped[float | None] = mapped_column(Float)

    # Staff substitution
    scheduled_staff_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    actual_staff_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    is_unscheduled: Mapped[bool] = mapped_column(nullable=False, default=False)
    unscheduled_reason: Mapped[str | None] = mapped_column(Text)

    approval_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)

    is_cancelled: Mapped[bool] = mapped_column(nullable=False, default=False)
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancelled_by_staff_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))

    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("end_at >= start_at", name="check_delivery_times"),
        CheckConstraint("units >= 0", name="check_delivery_units_non_negative"),
    )


class CheckEventModel(Base):
    """EVV check-in / check-out with GPS validation outcome."""

    __tablename__ = "check_events"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    service_delivery_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("service_deliveries.id"), nullable=False, index=True
    )
    schedule_event_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    patient_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    staff_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)

    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float | None] = mapped_column(Float)
    distance_m: Mapped[float | None] = mapped_column(Float)
    geofence_valid: Mapped[bool | None] = mapped_column()  # None = reference unknown

    status: Mapped[str] = mapped_column(Text, nullable=False, default="OK")
    method: Mapped[str] = mapped_column(Text, nullable=False, default="mobile")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("service_delivery_id", "event_type", name="uq_check_event_type"),
        Index("idx_check_events_status", "status"),
    )


class AuditLogModel(Base):
    """Actor-attributed audit trail for visit actions."""

    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    actor_id: Mapped[str | None] = mapped_column(Text, index=True)
    action: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    resource_type: Mapped[str | None] = mapped_column(Text)
    resource_id: Mapped[str | None] = mapped_column(Text, index=True)
    details: Mapped[dict | None] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
