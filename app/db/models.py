from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.contracts.enums import ActivityKind, ActivityStatus, LogAction


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RoutineRecord(TimestampMixin, Base):
    __tablename__ = "routines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dependent_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    caregiver_id: Mapped[str | None] = mapped_column(String(64), index=True)

    activities: Mapped[list[ActivityRecord]] = relationship(
        back_populates="routine",
        cascade="all, delete-orphan",
        order_by="ActivityRecord.position",
    )
    log_entries: Mapped[list[RoutineLogRecord]] = relationship(
        back_populates="routine",
        cascade="all, delete-orphan",
        order_by="RoutineLogRecord.id",
    )


class ActivityRecord(TimestampMixin, Base):
    __tablename__ = "routine_activities"
    __table_args__ = (
        Index("ix_routine_activities_status_schedule", "status", "schedule"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    routine_id: Mapped[int] = mapped_column(
        ForeignKey("routines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[ActivityKind] = mapped_column(
        Enum(ActivityKind, name="activity_kind", values_callable=_enum_values), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text)
    schedule: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ActivityStatus] = mapped_column(
        Enum(ActivityStatus, name="activity_status", values_callable=_enum_values),
        nullable=False,
        default=ActivityStatus.PENDING,
    )
    completion_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    specific_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    pre_notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    immediate_alarm_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_alert_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    routine: Mapped[RoutineRecord] = relationship(back_populates="activities")


class RoutineLogRecord(Base):
    __tablename__ = "routine_log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    routine_id: Mapped[int] = mapped_column(
        ForeignKey("routines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[LogAction] = mapped_column(
        Enum(LogAction, name="routine_log_action", values_callable=_enum_values), nullable=False
    )
    activity_id: Mapped[str | None] = mapped_column(String(32))
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    routine: Mapped[RoutineRecord] = relationship(back_populates="log_entries")
