from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol
from uuid import uuid4

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from app.db.models import ActivityRecord, RoutineLogRecord, RoutineRecord
from services.routines.errors import StoreError
from shared.contracts.enums import ActivityStatus, NotificationKind
from shared.contracts.models import Activity, LogEntry, Routine, as_utc, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "kind",
        "description",
        "schedule",
        "status",
        "completion_timestamp",
        "specific_data",
        "pre_notification_sent",
        "immediate_alarm_sent",
        "failure_alert_sent",
    }
)


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported activity fields: {sorted(unknown)}")


class RoutineStore(Protocol):
    """Persistence contract for routines and their embedded activities.

    Every write is atomic for a single routine. ``query_by_schedule_window``
    may return routines whose other activities do not match; callers re-check
    each activity before acting on it.
    """

    def upsert_append_activity(
        self,
        dependent_id: str,
        activity: Activity,
        log_entry: LogEntry,
        caregiver_id: Optional[str] = None,
    ) -> Activity: ...

    def find_by_dependent(self, dependent_id: str, with_log: bool = True) -> Optional[Routine]: ...

    def find_activity(self, dependent_id: str, activity_id: str) -> Optional[Activity]: ...

    def update_activity_fields(
        self, dependent_id: str, activity_id: str, fields: Dict[str, Any], log_entry: LogEntry
    ) -> Optional[Activity]: ...

    def remove_activity(self, dependent_id: str, activity_id: str, log_entry: LogEntry) -> int: ...

    def clear_activities(self, dependent_id: str, log_entry: LogEntry) -> int: ...

    def query_by_schedule_window(
        self, lo: datetime, hi: datetime, status: ActivityStatus, kind: NotificationKind
    ) -> List[Routine]: ...

    def mark_notification_sent(self, dependent_id: str, activity_id: str, kind: NotificationKind) -> bool: ...

    def assign_caregiver(self, dependent_id: str, caregiver_id: str, log_entry: LogEntry) -> bool: ...

    def close(self) -> None: ...


@dataclass
class InMemoryRoutineStore:
    routines: Dict[str, Routine] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def upsert_append_activity(
        self,
        dependent_id: str,
        activity: Activity,
        log_entry: LogEntry,
        caregiver_id: Optional[str] = None,
    ) -> Activity:
        with self._lock:
            now = utcnow()
            routine = self.routines.get(dependent_id)
            if routine is None:
                routine = Routine(
                    id=uuid4().hex,
                    dependent_id=dependent_id,
                    caregiver_id=caregiver_id,
                    created_at=now,
                    updated_at=now,
                )
                self.routines[dependent_id] = routine
            elif caregiver_id and not routine.caregiver_id:
                routine.caregiver_id = caregiver_id

            stored = activity.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
            routine.activities.append(stored)
            routine.log.append(log_entry.model_copy(deep=True))
            routine.updated_at = now
            return stored.model_copy(deep=True)

    def find_by_dependent(self, dependent_id: str, with_log: bool = True) -> Optional[Routine]:
        with self._lock:
            routine = self.routines.get(dependent_id)
            if routine is None:
                return None
            if with_log:
                return routine.model_copy(deep=True)
            return Routine(
                id=routine.id,
                dependent_id=routine.dependent_id,
                caregiver_id=routine.caregiver_id,
                activities=[a.model_copy(deep=True) for a in routine.activities],
                created_at=routine.created_at,
                updated_at=routine.updated_at,
            )

    def find_activity(self, dependent_id: str, activity_id: str) -> Optional[Activity]:
        with self._lock:
            routine = self.routines.get(dependent_id)
            if routine is None:
                return None
            activity = routine.activity(activity_id)
            return activity.model_copy(deep=True) if activity else None

    def update_activity_fields(
        self, dependent_id: str, activity_id: str, fields: Dict[str, Any], log_entry: LogEntry
    ) -> Optional[Activity]:
        _check_fields(fields)
        with self._lock:
            routine = self.routines.get(dependent_id)
            if routine is None:
                return None
            for index, activity in enumerate(routine.activities):
                if activity.id != activity_id:
                    continue
                now = utcnow()
                updated = activity.model_copy(update={**fields, "updated_at": now}, deep=True)
                routine.activities[index] = updated
                routine.log.append(log_entry.model_copy(deep=True))
                routine.updated_at = now
                return updated.model_copy(deep=True)
            return None

    def remove_activity(self, dependent_id: str, activity_id: str, log_entry: LogEntry) -> int:
        with self._lock:
            routine = self.routines.get(dependent_id)
            if routine is None:
                return 0
            remaining = [a for a in routine.activities if a.id != activity_id]
            removed = len(routine.activities) - len(remaining)
            if removed:
                routine.activities = remaining
                routine.log.append(log_entry.model_copy(deep=True))
                routine.updated_at = utcnow()
            return removed

    def clear_activities(self, dependent_id: str, log_entry: LogEntry) -> int:
        with self._lock:
            routine = self.routines.get(dependent_id)
            if routine is None:
                return 0
            routine.activities = []
            routine.log.append(log_entry.model_copy(deep=True))
            routine.updated_at = utcnow()
            return 1

    def query_by_schedule_window(
        self, lo: datetime, hi: datetime, status: ActivityStatus, kind: NotificationKind
    ) -> List[Routine]:
        lo, hi = as_utc(lo), as_utc(hi)
        with self._lock:
            return [
                routine.model_copy(deep=True)
                for routine in self.routines.values()
                if any(
                    a.status == status and lo <= a.schedule <= hi and not a.notification_sent(kind)
                    for a in routine.activities
                )
            ]

    def mark_notification_sent(self, dependent_id: str, activity_id: str, kind: NotificationKind) -> bool:
        with self._lock:
            routine = self.routines.get(dependent_id)
            activity = routine.activity(activity_id) if routine else None
            if activity is None:
                return False
            setattr(activity, kind.flag_field, True)
            return True

    def assign_caregiver(self, dependent_id: str, caregiver_id: str, log_entry: LogEntry) -> bool:
        with self._lock:
            routine = self.routines.get(dependent_id)
            if routine is None:
                return False
            routine.caregiver_id = caregiver_id
            routine.log.append(log_entry.model_copy(deep=True))
            routine.updated_at = utcnow()
            return True

    def close(self) -> None:
        pass


def _activity_columns(activity: Activity) -> Dict[str, Any]:
    return activity.model_dump(
        include={
            "title",
            "kind",
            "description",
            "schedule",
            "status",
            "completion_timestamp",
            "specific_data",
            "pre_notification_sent",
            "immediate_alarm_sent",
            "failure_alert_sent",
        }
    )


def _to_activity(record: ActivityRecord) -> Activity:
    return Activity.model_validate(record)


def _to_log_entry(record: RoutineLogRecord) -> LogEntry:
    return LogEntry(
        action=record.action,
        activity_id=record.activity_id,
        timestamp=record.logged_at,
        **(record.details or {}),
    )


def _to_routine(record: RoutineRecord, with_log: bool = False) -> Routine:
    return Routine(
        id=str(record.id),
        dependent_id=record.dependent_id,
        caregiver_id=record.caregiver_id,
        activities=[_to_activity(a) for a in record.activities],
        log=[_to_log_entry(entry) for entry in record.log_entries] if with_log else [],
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _log_record(routine_id: int, entry: LogEntry) -> RoutineLogRecord:
    return RoutineLogRecord(
        routine_id=routine_id,
        action=entry.action,
        activity_id=entry.activity_id,
        details=entry.details(),
        logged_at=entry.timestamp,
    )


class _RoutineInsertConflict(Exception):
    pass


class SqlRoutineStore:
    """Routine store backed by the ``routines`` / ``routine_activities`` tables."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(f"routine store operation failed: {exc}") from exc

    @staticmethod
    def _routine(session: Session, dependent_id: str, with_log: bool = False) -> Optional[RoutineRecord]:
        stmt = (
            select(RoutineRecord)
            .where(RoutineRecord.dependent_id == dependent_id)
            .options(selectinload(RoutineRecord.activities))
        )
        if with_log:
            stmt = stmt.options(selectinload(RoutineRecord.log_entries))
        return session.scalars(stmt).one_or_none()

    @staticmethod
    def _activity(session: Session, dependent_id: str, activity_id: str) -> Optional[ActivityRecord]:
        stmt = (
            select(ActivityRecord)
            .join(ActivityRecord.routine)
            .where(RoutineRecord.dependent_id == dependent_id, ActivityRecord.id == activity_id)
            .with_for_update()
        )
        return session.scalars(stmt).one_or_none()

    def upsert_append_activity(
        self,
        dependent_id: str,
        activity: Activity,
        log_entry: LogEntry,
        caregiver_id: Optional[str] = None,
    ) -> Activity:
        try:
            return self._append_activity(dependent_id, activity, log_entry, caregiver_id)
        except _RoutineInsertConflict:
            logger.info("Routine for dependent %s was created concurrently; retrying append", dependent_id)
        try:
            return self._append_activity(dependent_id, activity, log_entry, caregiver_id)
        except _RoutineInsertConflict as exc:
            raise StoreError(f"routine store operation failed: {exc.__cause__}") from exc.__cause__

    def _append_activity(
        self,
        dependent_id: str,
        activity: Activity,
        log_entry: LogEntry,
        caregiver_id: Optional[str],
    ) -> Activity:
        with self._transaction() as session:
            routine = self._routine(session, dependent_id)
            if routine is None:
                routine = RoutineRecord(dependent_id=dependent_id, caregiver_id=caregiver_id)
                session.add(routine)
                try:
                    session.flush()
                except IntegrityError as exc:
                    # Lost the race on routines.dependent_id; the winner's row is committed.
                    raise _RoutineInsertConflict(dependent_id) from exc
                position = 0
            else:
                if caregiver_id and not routine.caregiver_id:
                    routine.caregiver_id = caregiver_id
                position = max((a.position for a in routine.activities), default=-1) + 1

            record = ActivityRecord(
                id=activity.id,
                routine_id=routine.id,
                position=position,
                **_activity_columns(activity),
            )
            session.add(record)
            session.add(_log_record(routine.id, log_entry))
            session.flush()
            return _to_activity(record)

    def find_by_dependent(self, dependent_id: str, with_log: bool = True) -> Optional[Routine]:
        with self._transaction() as session:
            routine = self._routine(session, dependent_id, with_log=with_log)
            return _to_routine(routine, with_log=with_log) if routine else None

    def find_activity(self, dependent_id: str, activity_id: str) -> Optional[Activity]:
        with self._transaction() as session:
            stmt = (
                select(ActivityRecord)
                .join(ActivityRecord.routine)
                .where(RoutineRecord.dependent_id == dependent_id, ActivityRecord.id == activity_id)
            )
            record = session.scalars(stmt).one_or_none()
            return _to_activity(record) if record else None

    def update_activity_fields(
        self, dependent_id: str, activity_id: str, fields: Dict[str, Any], log_entry: LogEntry
    ) -> Optional[Activity]:
        _check_fields(fields)
        with self._transaction() as session:
            record = self._activity(session, dependent_id, activity_id)
            if record is None:
                return None
            for name, value in fields.items():
                setattr(record, name, value)
            session.add(_log_record(record.routine_id, log_entry))
            session.flush()
            return _to_activity(record)

    def remove_activity(self, dependent_id: str, activity_id: str, log_entry: LogEntry) -> int:
        with self._transaction() as session:
            record = self._activity(session, dependent_id, activity_id)
            if record is None:
                return 0
            routine_id = record.routine_id
            session.delete(record)
            session.add(_log_record(routine_id, log_entry))
            return 1

    def clear_activities(self, dependent_id: str, log_entry: LogEntry) -> int:
        with self._transaction() as session:
            routine = session.scalars(
                select(RoutineRecord).where(RoutineRecord.dependent_id == dependent_id)
            ).one_or_none()
            if routine is None:
                return 0
            session.execute(
                delete(ActivityRecord)
                .where(ActivityRecord.routine_id == routine.id)
                .execution_options(synchronize_session=False)
            )
            session.add(_log_record(routine.id, log_entry))
            return 1

    def query_by_schedule_window(
        self, lo: datetime, hi: datetime, status: ActivityStatus, kind: NotificationKind
    ) -> List[Routine]:
        flag = getattr(ActivityRecord, kind.flag_field)
        stmt = (
            select(RoutineRecord)
            .where(
                RoutineRecord.activities.any(
                    and_(
                        ActivityRecord.status == status,
                        ActivityRecord.schedule >= as_utc(lo),
                        ActivityRecord.schedule <= as_utc(hi),
                        flag.is_not(True),
                    )
                )
            )
            .options(selectinload(RoutineRecord.activities))
            .order_by(RoutineRecord.id)
        )
        with self._transaction() as session:
            return [_to_routine(record) for record in session.scalars(stmt)]

    def mark_notification_sent(self, dependent_id: str, activity_id: str, kind: NotificationKind) -> bool:
        routine_id = (
            select(RoutineRecord.id).where(RoutineRecord.dependent_id == dependent_id).scalar_subquery()
        )
        stmt = (
            update(ActivityRecord)
            .where(ActivityRecord.id == activity_id, ActivityRecord.routine_id == routine_id)
            .values({kind.flag_field: True})
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            result = session.execute(stmt)
            return result.rowcount > 0

    def assign_caregiver(self, dependent_id: str, caregiver_id: str, log_entry: LogEntry) -> bool:
        with self._transaction() as session:
            routine = session.scalars(
                select(RoutineRecord).where(RoutineRecord.dependent_id == dependent_id)
            ).one_or_none()
            if routine is None:
                return False
            routine.caregiver_id = caregiver_id
            session.add(_log_record(routine.id, log_entry))
            return True

    def close(self) -> None:
        bind = self._session_factory.kw.get("bind")
        if bind is not None:
            bind.dispose()
