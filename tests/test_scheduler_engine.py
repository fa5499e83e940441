from datetime import datetime, timedelta, timezone

from services.notifier.channel import InMemoryChannel
from services.routines.errors import StoreError
from services.routines.lifecycle import ActivityLifecycleManager
from services.routines.store import InMemoryRoutineStore
from services.scheduler.engine import SWEEP_RULES, SchedulerEngine
from shared.contracts.enums import ActivityStatus, EventType, NotificationKind

TEN = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _create(flow, dependent_id, schedule, title="Pills", kind="medication", caregiver_id="cg-1"):
    return flow.lifecycle.create_activity(
        dependent_id,
        {"title": title, "kind": kind, "schedule": schedule},
        caregiver_id=caregiver_id,
    )


def test_sweep_windows_match_notification_offsets():
    windows = {rule.kind: rule.window.bounds(TEN) for rule in SWEEP_RULES}
    assert windows[NotificationKind.IMMEDIATE_ALARM] == (TEN - timedelta(seconds=60), TEN)
    assert windows[NotificationKind.PRE_NOTIFICATION] == (TEN + timedelta(minutes=14), TEN + timedelta(minutes=15))
    assert windows[NotificationKind.FAILURE_ALERT] == (TEN - timedelta(minutes=31), TEN - timedelta(minutes=30))


def test_alarm_fires_at_schedule_time_with_expected_payload(flow, channel):
    activity = _create(flow, "dep-1", TEN)

    report = flow.run_scheduler(TEN)

    assert report.sent(NotificationKind.IMMEDIATE_ALARM) == 1
    [alarm] = channel.events(EventType.ALARM)
    assert alarm.channel == "dep-1"
    assert alarm.payload["type"] == "immediate_alarm"
    assert alarm.payload["title"] == "Activity Alarm!"
    assert alarm.payload["message"] == "It's time for: Pills"
    assert alarm.payload["activity"]["id"] == activity.id
    assert flow.lifecycle.get_activity("dep-1", activity.id).immediate_alarm_sent is True


def test_alarm_is_not_sent_once_window_has_elapsed(flow, channel):
    activity = _create(flow, "dep-1", TEN)

    report = flow.run_scheduler(TEN + timedelta(minutes=2))

    assert report.sent(NotificationKind.IMMEDIATE_ALARM) == 0
    assert channel.events(EventType.ALARM) == []
    assert flow.lifecycle.get_activity("dep-1", activity.id).immediate_alarm_sent is False


def test_back_to_back_ticks_send_each_alarm_once(flow, channel):
    _create(flow, "dep-1", TEN)

    flow.run_scheduler(TEN)
    flow.run_scheduler(TEN + timedelta(seconds=60))
    flow.run_scheduler(TEN)

    assert len(channel.events(EventType.ALARM)) == 1


def test_pre_notification_fires_fifteen_minutes_ahead_once(flow, channel):
    _create(flow, "dep-1", TEN + timedelta(minutes=15), title="Lunch", kind="feeding")

    flow.run_scheduler(TEN)
    flow.run_scheduler(TEN)

    [reminder] = channel.events(EventType.PRE_NOTIFICATION)
    assert reminder.channel == "dep-1"
    assert reminder.payload["type"] == "pre_activity_notification"
    assert reminder.payload["message"] == "Reminder: Lunch in approximately 15 minutes."


def test_failure_alert_goes_to_caregiver_with_dependent_id(flow, channel):
    activity = _create(flow, "dep-1", TEN - timedelta(minutes=30), caregiver_id="cg-7")

    report = flow.run_scheduler(TEN)

    assert report.sent(NotificationKind.FAILURE_ALERT) == 1
    [alert] = channel.events(EventType.FAILURE_ALERT)
    assert alert.channel == "cg-7"
    assert alert.payload["dependent_id"] == "dep-1"
    assert alert.payload["type"] == "activity_failure_alert"
    assert alert.payload["activity"]["id"] == activity.id
    assert "09:30" in alert.payload["message"]


def test_failure_alert_is_skipped_without_caregiver(flow, channel):
    activity = _create(flow, "dep-1", TEN - timedelta(minutes=30), caregiver_id=None)

    report = flow.run_scheduler(TEN)

    sweep = report.sweep(NotificationKind.FAILURE_ALERT)
    assert sweep.error is None
    assert sweep.skipped == 1
    assert channel.events(EventType.FAILURE_ALERT) == []
    assert flow.lifecycle.get_activity("dep-1", activity.id).failure_alert_sent is False


def test_completed_activities_are_never_notified(flow, channel):
    activity = _create(flow, "dep-1", TEN)
    flow.lifecycle.update_activity("dep-1", activity.id, {"status": "completed"})
    channel.sent.clear()

    for tick in (TEN - timedelta(minutes=15), TEN, TEN + timedelta(minutes=30)):
        flow.run_scheduler(tick)

    assert channel.sent == []


def test_reset_to_pending_allows_renotification(flow, channel):
    activity = _create(flow, "dep-1", TEN)
    flow.run_scheduler(TEN)
    flow.lifecycle.update_activity("dep-1", activity.id, {"status": "completed"})
    flow.lifecycle.update_activity("dep-1", activity.id, {"status": "pending"})

    flow.run_scheduler(TEN + timedelta(seconds=30))

    assert len(channel.events(EventType.ALARM)) == 2


def test_publish_failure_leaves_flag_unset_and_continues(flow, channel):
    failing = _create(flow, "dep-1", TEN)
    healthy = _create(flow, "dep-2", TEN)
    channel.failing.add("dep-1")

    report = flow.run_scheduler(TEN)

    sweep = report.sweep(NotificationKind.IMMEDIATE_ALARM)
    assert (sweep.sent, sweep.failed) == (1, 1)
    assert flow.lifecycle.get_activity("dep-1", failing.id).immediate_alarm_sent is False
    assert flow.lifecycle.get_activity("dep-2", healthy.id).immediate_alarm_sent is True

    channel.failing.clear()
    flow.run_scheduler(TEN + timedelta(seconds=30))
    assert sorted(m.channel for m in channel.events(EventType.ALARM)) == ["dep-1", "dep-2"]


class PreNotificationOutage(InMemoryRoutineStore):
    def query_by_schedule_window(self, lo, hi, status, kind):
        if kind == NotificationKind.PRE_NOTIFICATION:
            raise StoreError("connection refused")
        return super().query_by_schedule_window(lo, hi, status, kind)


def test_store_failure_aborts_only_its_own_sweep(channel, clock):
    store = PreNotificationOutage()
    engine = SchedulerEngine(store=store, channel=channel, clock=clock)

    lifecycle = ActivityLifecycleManager(store=store, channel=channel, clock=clock)
    lifecycle.create_activity("dep-1", {"title": "Pills", "kind": "medication", "schedule": TEN}, caregiver_id="cg")
    lifecycle.create_activity(
        "dep-1", {"title": "Walk", "kind": "physical_activity", "schedule": TEN - timedelta(minutes=30)}
    )

    report = engine.tick(TEN)

    assert "connection refused" in report.sweep(NotificationKind.PRE_NOTIFICATION).error
    assert report.sent(NotificationKind.IMMEDIATE_ALARM) == 1
    assert report.sent(NotificationKind.FAILURE_ALERT) == 1


class OverReturningStore(InMemoryRoutineStore):
    def query_by_schedule_window(self, lo, hi, status, kind):
        return [self.find_by_dependent(dependent_id) for dependent_id in self.routines]


def test_activities_are_rechecked_after_a_broad_query(channel, clock):
    store = OverReturningStore()
    engine = SchedulerEngine(store=store, channel=channel, clock=clock)

    lifecycle = ActivityLifecycleManager(store=store, channel=channel, clock=clock)
    due = lifecycle.create_activity("dep-1", {"title": "Pills", "kind": "medication", "schedule": TEN})
    lifecycle.create_activity("dep-1", {"title": "Dinner", "kind": "feeding", "schedule": TEN + timedelta(hours=8)})
    done = lifecycle.create_activity("dep-2", {"title": "Walk", "kind": "physical_activity", "schedule": TEN})
    lifecycle.update_activity("dep-2", done.id, {"status": ActivityStatus.COMPLETED.value})
    channel.sent.clear()

    report = engine.tick(TEN)

    assert report.sent() == 1
    [alarm] = channel.sent
    assert alarm.payload["activity"]["id"] == due.id


def test_overlapping_tick_is_skipped(store, clock):
    results = []

    class ReentrantChannel:
        def publish(self, channel, event, payload):
            results.append(engine.tick(TEN))

    engine = SchedulerEngine(store=store, channel=ReentrantChannel(), clock=clock)

    ActivityLifecycleManager(store=store, channel=InMemoryChannel(), clock=clock).create_activity(
        "dep-1", {"title": "Pills", "kind": "medication", "schedule": TEN}
    )

    report = engine.tick(TEN)

    assert report.skipped is False
    assert report.sent(NotificationKind.IMMEDIATE_ALARM) == 1
    assert len(results) == 1 and results[0].skipped is True
    assert engine.tick(TEN + timedelta(minutes=1)).skipped is False


def test_tick_uses_clock_when_no_time_given(flow, channel, clock):
    clock.now = TEN
    _create(flow, "dep-1", TEN)
    report = flow.run_scheduler()
    assert report.at == TEN
    assert len(channel.events(EventType.ALARM)) == 1
