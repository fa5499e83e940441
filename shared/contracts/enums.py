from enum import Enum


class ActivityKind(str, Enum):
    PHYSICAL_ACTIVITY = "physical_activity"
    FEEDING = "feeding"
    MEDICATION = "medication"


class ActivityStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NOT_COMPLETED = "not_completed"


class NotificationKind(str, Enum):
    PRE_NOTIFICATION = "pre_notification"
    IMMEDIATE_ALARM = "immediate_alarm"
    FAILURE_ALERT = "failure_alert"

    @property
    def flag_field(self) -> str:
        return NOTIFICATION_FLAG_FIELDS[self]


NOTIFICATION_FLAG_FIELDS = {
    NotificationKind.PRE_NOTIFICATION: "pre_notification_sent",
    NotificationKind.IMMEDIATE_ALARM: "immediate_alarm_sent",
    NotificationKind.FAILURE_ALERT: "failure_alert_sent",
}


class EventType(str, Enum):
    ACTIVITY_CREATED = "activity_created_realtime"
    ACTIVITY_UPDATED = "activity_updated_realtime"
    ACTIVITY_DELETED = "activity_deleted_realtime"
    ALL_ACTIVITIES_DELETED = "all_activities_deleted_realtime"
    ALARM = "alarm"
    PRE_NOTIFICATION = "pre_notification"
    FAILURE_ALERT = "failure_alert"
    EMERGENCY = "emergency"
    EMERGENCY_CANCEL = "emergency_cancel"


class LogAction(str, Enum):
    ACTIVITY_CREATED = "activity_created"
    ACTIVITY_UPDATED = "activity_updated"
    ACTIVITY_DELETED = "activity_deleted"
    ALL_ACTIVITIES_DELETED = "all_activities_deleted"
    CAREGIVER_ASSIGNED = "caregiver_assigned"
