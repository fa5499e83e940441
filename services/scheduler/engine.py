from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.notifier.channel import NotificationChannel
from services.routines.errors import ChannelError
from services.routines.store import RoutineStore
from shared.contracts.enums import ActivityStatus, EventType, NotificationKind
from shared.contracts.models import (
    Activity,
    FailureAlert,
    RealtimeNotification,
    Routine,
    ScheduleWindow,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

TICK_INTERVAL_SECONDS = 60
DEPENDENT = "dependent"
CAREGIVER = "caregiver"


@dataclass(frozen=True)
class SweepRule:
    kind: NotificationKind
    event: EventType
    notification_type: str
    window: ScheduleWindow
    recipient: str
    title: str
    message: str


SWEEP_RULES: Sequence[SweepRule] = (
    SweepRule(
        kind=NotificationKind.IMMEDIATE_ALARM,
        event=EventType.ALARM,
        notification_type="immediate_alarm",
        window=ScheduleWindow(start_offset=timedelta(seconds=-60), end_offset=timedelta(0)),
        recipient=DEPENDENT,
        title="Activity Alarm!",
        message="It's time for: {title}",
    ),
    SweepRule(
        kind=NotificationKind.PRE_NOTIFICATION,
        event=EventType.PRE_NOTIFICATION,
        notification_type="pre_activity_notification",
        window=ScheduleWindow(start_offset=timedelta(minutes=14), end_offset=timedelta(minutes=15)),
        recipient=DEPENDENT,
        title="Activity Reminder",
        message="Reminder: {title} in approximately 15 minutes.",
    ),
    SweepRule(
        kind=NotificationKind.FAILURE_ALERT,
        event=EventType.FAILURE_ALERT,
        notification_type="activity_failure_alert",
        window=ScheduleWindow(start_offset=timedelta(minutes=-31), end_offset=timedelta(minutes=-30)),
        recipient=CAREGIVER,
        title="Alert: Activity Not Completed!",
        message=(
            'The activity "{title}" for dependent (ID: {dependent_id}) scheduled for '
            "{scheduled_at} UTC appears to be uncompleted."
        ),
    ),
)


@dataclass
class SweepReport:
    kind: NotificationKind
    window_start: datetime
    window_end: datetime
    routines: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None


@dataclass
class TickReport:
    at: datetime
    sweeps: List[SweepReport] = field(default_factory=list)
    skipped: bool = False

    def sent(self, kind: Optional[NotificationKind] = None) -> int:
        return sum(s.sent for s in self.sweeps if kind is None or s.kind == kind)

    def sweep(self, kind: NotificationKind) -> Optional[SweepReport]:
        return next((s for s in self.sweeps if s.kind == kind), None)


class SchedulerEngine:
    """Runs the notification sweeps for one tick.

    Each sweep asks the store for routines with a pending activity in its
    window whose flag is still unset, re-checks every activity, publishes, and
    only then persists the flag for that activity. Ticks never overlap: a tick
    started while another is running returns a skipped report.
    """

    def __init__(
        self,
        store: RoutineStore,
        channel: NotificationChannel,
        rules: Sequence[SweepRule] = SWEEP_RULES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.channel = channel
        self.rules = tuple(rules)
        self.clock = clock
        self._tick_lock = threading.Lock()

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = as_utc(now or self.clock())
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running; skipping tick at %s", now.isoformat())
            return TickReport(at=now, skipped=True)
        try:
            logger.debug("Scheduler tick at %s", now.isoformat())
            return TickReport(at=now, sweeps=[self.run_sweep(rule, now) for rule in self.rules])
        finally:
            self._tick_lock.release()

    def run_sweep(self, rule: SweepRule, now: datetime) -> SweepReport:
        lo, hi = rule.window.bounds(now)
        report = SweepReport(kind=rule.kind, window_start=lo, window_end=hi)
        try:
            self._sweep(rule, lo, hi, report)
        except Exception as exc:
            report.error = str(exc)
            logger.exception("Sweep %s aborted for window [%s, %s]", rule.kind.value, lo.isoformat(), hi.isoformat())
        return report

    def _sweep(self, rule: SweepRule, lo: datetime, hi: datetime, report: SweepReport) -> None:
        routines = self.store.query_by_schedule_window(lo, hi, ActivityStatus.PENDING, rule.kind)
        report.routines = len(routines)

        for routine in routines:
            due = [a for a in routine.activities if a.awaits_notification(rule.kind, lo, hi)]
            if not due:
                continue

            recipient = self._recipient(rule, routine)
            if recipient is None:
                report.skipped += len(due)
                logger.warning(
                    "[%s] No caregiver for dependent %s; not sent for activities %s",
                    rule.kind.value,
                    routine.dependent_id,
                    [a.title for a in due],
                )
                continue

            for activity in due:
                payload = self._payload(rule, routine, activity)
                try:
                    self.channel.publish(recipient, rule.event, payload)
                except ChannelError:
                    report.failed += 1
                    logger.warning(
                        "[%s] Publish failed for activity %s on channel %s",
                        rule.kind.value,
                        activity.id,
                        recipient,
                        exc_info=True,
                    )
                    continue

                self.store.mark_notification_sent(routine.dependent_id, activity.id, rule.kind)
                report.sent += 1
                logger.info(
                    "[%s] Sent to %s (dependent %s) -> %s",
                    rule.kind.value,
                    recipient,
                    routine.dependent_id,
                    activity.title,
                )

        logger.info(
            "[%s] Checked %d routines, sent %d, failed %d, skipped %d",
            rule.kind.value,
            report.routines,
            report.sent,
            report.failed,
            report.skipped,
        )

    @staticmethod
    def _recipient(rule: SweepRule, routine: Routine) -> Optional[str]:
        if rule.recipient == CAREGIVER:
            return routine.caregiver_id or None
        return routine.dependent_id

    @staticmethod
    def _payload(rule: SweepRule, routine: Routine, activity: Activity) -> Dict[str, Any]:
        message = rule.message.format(
            title=activity.title,
            dependent_id=routine.dependent_id,
            scheduled_at=activity.schedule.strftime("%H:%M"),
        )
        if rule.recipient == CAREGIVER:
            notification = FailureAlert(
                title=rule.title,
                message=message,
                activity=activity,
                type=rule.notification_type,
                dependent_id=routine.dependent_id,
            )
        else:
            notification = RealtimeNotification(
                title=rule.title,
                message=message,
                activity=activity,
                type=rule.notification_type,
            )
        return notification.model_dump(mode="json")


class TickScheduler:
    """Drives ``SchedulerEngine.tick`` from an APScheduler interval job."""

    JOB_ID = "routine_notification_tick"

    def __init__(
        self,
        engine: SchedulerEngine,
        interval_seconds: int = TICK_INTERVAL_SECONDS,
        scheduler: Optional[BaseScheduler] = None,
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> None:
        if self.running:
            return
        self._scheduler.add_job(
            self._run_tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(self.interval_seconds // 2, 1),
        )
        self._scheduler.start()
        logger.info("Tick scheduler started; interval %ss", self.interval_seconds)

    def shutdown(self, wait: bool = False) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Tick scheduler stopped")

    def _run_tick(self) -> None:
        report = self.engine.tick()
        if report.skipped:
            return
        logger.debug("Tick at %s sent %d notifications", report.at.isoformat(), report.sent())
