from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from point_engine.db import Base

JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class PointType(str, enum.Enum):
    TARDY = "TARDY"
    UNDERTIME = "UNDERTIME"
    UNDERTIME_SEVERE = "UNDERTIME_SEVERE"
    HALF_DAY_ABSENCE = "HALF_DAY_ABSENCE"
    WHOLE_DAY_ABSENCE_ADVISED = "WHOLE_DAY_ABSENCE_ADVISED"
    WHOLE_DAY_ABSENCE_UNADVISED = "WHOLE_DAY_ABSENCE_UNADVISED"


class ExpirationType(str, enum.Enum):
    NONE = "NONE"
    SRO = "SRO"
    GBRO = "GBRO"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="agent", server_default=text("'agent'"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    attendance_points: Mapped[list[AttendancePoint]] = relationship(
        back_populates="user",
        foreign_keys="AttendancePoint.user_id",
    )
    attendances: Mapped[list[Attendance]] = relationship(back_populates="user")


class Attendance(Base):
    """Outcome record owned by the attendance subsystem; read-only here."""

    __tablename__ = "attendances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    is_advised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    tardy_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    undertime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    admin_verified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    scheduled_time_in: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    scheduled_time_out: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    actual_time_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_time_out: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    user: Mapped[User] = relationship(back_populates="attendances")


class AttendancePoint(Base):
    __tablename__ = "attendance_points"
    __table_args__ = (
        Index("ix_attendance_points_user_shift_date", "user_id", "shift_date"),
        Index("ix_attendance_points_expiry_scan", "is_expired", "is_excused", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    attendance_id: Mapped[int | None] = mapped_column(
        ForeignKey("attendances.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    point_type: Mapped[PointType] = mapped_column(
        Enum(PointType, name="attendance_point_type"),
        nullable=False,
        index=True,
    )
    points: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_advised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_excused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    excused_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    excused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    excuse_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[date] = mapped_column(Date, nullable=False)
    expiration_type: Mapped[ExpirationType] = mapped_column(
        Enum(ExpirationType, name="attendance_point_expiration_type"),
        nullable=False,
        default=ExpirationType.SRO,
        server_default=text("'SRO'"),
    )
    is_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    expired_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    eligible_for_gbro: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    gbro_expires_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    tardy_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    undertime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    violation_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user: Mapped[User] = relationship(back_populates="attendance_points", foreign_keys=[user_id])
    attendance: Mapped[Attendance | None] = relationship()


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User | None] = relationship()
