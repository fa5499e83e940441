from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import ActivityKind, ActivityStatus, EventType, LogAction, NotificationKind


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_activity_id() -> str:
    return uuid4().hex


class ActivityCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=255)
    kind: ActivityKind
    description: str | None = None
    schedule: datetime
    specific_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("schedule")
    @classmethod
    def normalize_schedule(cls, value: datetime) -> datetime:
        return as_utc(value)


# Fields a patch may omit but never set to null.
NON_NULLABLE_PATCH_FIELDS = ("title", "kind", "schedule", "status", "specific_data")


class ActivityPatch(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=255)
    kind: ActivityKind | None = None
    description: str | None = None
    schedule: datetime | None = None
    status: ActivityStatus | None = None
    specific_data: dict[str, Any] | None = None

    @field_validator("schedule")
    @classmethod
    def normalize_schedule(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    @model_validator(mode="after")
    def validate_provided_fields(self) -> "ActivityPatch":
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        for name in NON_NULLABLE_PATCH_FIELDS:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class Activity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    kind: ActivityKind
    description: str | None = None
    schedule: datetime
    status: ActivityStatus = ActivityStatus.PENDING
    completion_timestamp: datetime | None = None
    specific_data: dict[str, Any] = Field(default_factory=dict)

    pre_notification_sent: bool = False
    immediate_alarm_sent: bool = False
    failure_alert_sent: bool = False

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("schedule", "completion_timestamp", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    def notification_sent(self, kind: NotificationKind) -> bool:
        return bool(getattr(self, kind.flag_field))

    def awaits_notification(self, kind: NotificationKind, lo: datetime, hi: datetime) -> bool:
        return (
            self.status == ActivityStatus.PENDING
            and lo <= self.schedule <= hi
            and not self.notification_sent(kind)
        )


class LogEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: LogAction
    activity_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    def details(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"action", "activity_id", "timestamp"})


class Routine(BaseModel):
    id: str
    dependent_id: str
    caregiver_id: str | None = None
    activities: list[Activity] = Field(default_factory=list)
    log: list[LogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return as_utc(value)

    def activity(self, activity_id: str) -> Activity | None:
        return next((a for a in self.activities if a.id == activity_id), None)


class RealtimeNotification(BaseModel):
    title: str
    message: str
    activity: Activity
    type: str


class FailureAlert(RealtimeNotification):
    dependent_id: str


class ActivityDeleted(BaseModel):
    activity_id: str
    dependent_id: str


class RoutineCleared(BaseModel):
    dependent_id: str


class EmergencyRequest(BaseModel):
    """Raised from the dependent's device; routed to the caregiver's channel."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    caregiver_id: str = Field(min_length=1, max_length=64)
    dependent_id: str | None = Field(default=None, min_length=1, max_length=64)
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)


class EmergencyCancelled(BaseModel):
    caregiver_id: str
    dependent_id: str | None = None


class EmergencyAlert(EmergencyCancelled):
    timestamp: datetime


class ChannelMessage(BaseModel):
    channel: str = Field(min_length=1)
    event: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=utcnow)


class ScheduleWindow(BaseModel):
    """Closed schedule range, relative to a tick time."""

    model_config = ConfigDict(frozen=True)

    start_offset: timedelta
    end_offset: timedelta

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        now = as_utc(now)
        return now + self.start_offset, now + self.end_offset
