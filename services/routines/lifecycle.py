from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from services.notifier.channel import NotificationChannel
from services.routines.errors import ActivityValidationError, ChannelError
from services.routines.store import RoutineStore
from shared.contracts.enums import (
    NOTIFICATION_FLAG_FIELDS,
    ActivityKind,
    ActivityStatus,
    EventType,
    LogAction,
)
from shared.contracts.models import (
    Activity,
    ActivityCreate,
    ActivityDeleted,
    ActivityPatch,
    LogEntry,
    RoutineCleared,
    new_activity_id,
    utcnow,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_payload(model: Type[ModelT], data: Union[ModelT, Mapping[str, Any]]) -> ModelT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        details = "; ".join(f"{'.'.join(str(p) for p in e['loc']) or 'body'}: {e['msg']}" for e in errors)
        raise ActivityValidationError(f"Invalid {model.__name__} data: {details}", errors=errors) from exc


def _require_id(value: str, name: str) -> str:
    if not value or not value.strip():
        raise ActivityValidationError(f"{name} is required")
    return value.strip()


class ActivityLifecycleManager:
    """Owns the status/flag state machine of activities inside a routine.

    Every write goes through a single targeted store update carrying its audit
    log entry, then a realtime event is published on the dependent's channel.
    A failed realtime publish is logged and does not undo the committed write.
    """

    def __init__(
        self,
        store: RoutineStore,
        channel: NotificationChannel,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.channel = channel
        self.clock = clock

    def create_activity(
        self,
        dependent_id: str,
        data: Union[ActivityCreate, Mapping[str, Any]],
        caregiver_id: Optional[str] = None,
    ) -> Activity:
        dependent_id = _require_id(dependent_id, "dependent_id")
        payload = parse_payload(ActivityCreate, data)
        activity = Activity(id=new_activity_id(), **payload.model_dump())
        entry = LogEntry(
            action=LogAction.ACTIVITY_CREATED,
            activity_id=activity.id,
            timestamp=self.clock(),
            activity_title=activity.title,
        )
        created = self.store.upsert_append_activity(dependent_id, activity, entry, caregiver_id=caregiver_id)
        self._emit(dependent_id, EventType.ACTIVITY_CREATED, created.model_dump(mode="json"))
        return created

    def list_activities(self, dependent_id: str, kind: Optional[ActivityKind] = None) -> List[Activity]:
        routine = self.store.find_by_dependent(dependent_id, with_log=False)
        if routine is None:
            return []
        if kind is None:
            return routine.activities
        return [a for a in routine.activities if a.kind == kind]

    def get_activity(self, dependent_id: str, activity_id: str) -> Optional[Activity]:
        return self.store.find_activity(dependent_id, activity_id)

    def update_activity(
        self,
        dependent_id: str,
        activity_id: str,
        patch: Union[ActivityPatch, Mapping[str, Any]],
    ) -> Optional[Activity]:
        patch = parse_payload(ActivityPatch, patch)
        current = self.store.find_activity(dependent_id, activity_id)
        if current is None:
            return None

        changes = patch.changes()
        fields: Dict[str, Any] = dict(changes)
        now = self.clock()

        status = changes.get("status")
        if status == ActivityStatus.COMPLETED:
            fields["completion_timestamp"] = now
        elif status is not None:
            fields["completion_timestamp"] = None

        schedule_changed = "schedule" in changes and changes["schedule"] != current.schedule
        if status == ActivityStatus.PENDING or schedule_changed:
            fields.update({flag: False for flag in NOTIFICATION_FLAG_FIELDS.values()})
            logger.info(
                "Resetting notification flags for activity %s (status=%s, schedule_changed=%s)",
                activity_id,
                status.value if status else None,
                schedule_changed,
            )

        entry = LogEntry(
            action=LogAction.ACTIVITY_UPDATED,
            activity_id=activity_id,
            timestamp=now,
            updated_fields=list(changes),
        )
        updated = self.store.update_activity_fields(dependent_id, activity_id, fields, entry)
        if updated is None:
            return None
        self._emit(dependent_id, EventType.ACTIVITY_UPDATED, updated.model_dump(mode="json"))
        return updated

    def delete_activity(self, dependent_id: str, activity_id: str) -> bool:
        entry = LogEntry(action=LogAction.ACTIVITY_DELETED, activity_id=activity_id, timestamp=self.clock())
        if not self.store.remove_activity(dependent_id, activity_id, entry):
            return False
        payload = ActivityDeleted(activity_id=activity_id, dependent_id=dependent_id)
        self._emit(dependent_id, EventType.ACTIVITY_DELETED, payload.model_dump(mode="json"))
        return True

    def delete_all_activities(self, dependent_id: str) -> bool:
        entry = LogEntry(
            action=LogAction.ALL_ACTIVITIES_DELETED,
            timestamp=self.clock(),
            dependent_id=dependent_id,
        )
        if not self.store.clear_activities(dependent_id, entry):
            return False
        payload = RoutineCleared(dependent_id=dependent_id)
        self._emit(dependent_id, EventType.ALL_ACTIVITIES_DELETED, payload.model_dump(mode="json"))
        return True

    def assign_caregiver(self, dependent_id: str, caregiver_id: str) -> bool:
        caregiver_id = _require_id(caregiver_id, "caregiver_id")
        entry = LogEntry(
            action=LogAction.CAREGIVER_ASSIGNED,
            timestamp=self.clock(),
            caregiver_id=caregiver_id,
        )
        return self.store.assign_caregiver(dependent_id, caregiver_id, entry)

    def activity_log(self, dependent_id: str) -> List[LogEntry]:
        routine = self.store.find_by_dependent(dependent_id)
        return routine.log if routine else []

    def _emit(self, dependent_id: str, event: EventType, payload: Dict[str, Any]) -> None:
        try:
            self.channel.publish(dependent_id, event, payload)
        except ChannelError:
            logger.warning("Could not publish %s to channel %s", event.value, dependent_id, exc_info=True)
            return
        logger.debug("Emitted %s to channel %s", event.value, dependent_id)
