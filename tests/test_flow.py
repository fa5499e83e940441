from datetime import timedelta

import httpx

from careroutine import CareRoutineFlow, build_channel, build_store
from services.notifier.channel import HttpChannel, InMemoryChannel
from services.routines.store import InMemoryRoutineStore, SqlRoutineStore
from shared.config import Settings
from shared.contracts.enums import EventType, NotificationKind


def test_lunch_reminder_is_sent_once(flow, channel, clock):
    lunch = flow.lifecycle.create_activity(
        "dep-1", {"title": "Lunch", "kind": "feeding", "schedule": clock.now + timedelta(minutes=15)}
    )

    clock.advance(seconds=30)
    first = flow.run_scheduler()
    clock.advance(seconds=45)
    second = flow.run_scheduler()

    assert first.sent(NotificationKind.PRE_NOTIFICATION) == 1
    assert second.sent(NotificationKind.PRE_NOTIFICATION) == 0
    assert len(channel.events(EventType.PRE_NOTIFICATION, channel="dep-1")) == 1
    assert flow.lifecycle.get_activity("dep-1", lunch.id).pre_notification_sent is True


def test_day_of_notifications_for_one_activity(flow, channel, clock):
    schedule = clock.now + timedelta(hours=1)
    pills = flow.lifecycle.create_activity(
        "dep-1",
        {"title": "Pills", "kind": "medication", "schedule": schedule, "specific_data": {"dose": "5mg"}},
        caregiver_id="cg-1",
    )

    # One tick per minute across the whole lifetime of the activity.
    clock.now = schedule - timedelta(minutes=20)
    while clock.now <= schedule + timedelta(minutes=40):
        flow.run_scheduler()
        clock.advance(minutes=1)

    assert [(m.event, m.channel) for m in channel.sent[1:]] == [
        (EventType.PRE_NOTIFICATION, "dep-1"),
        (EventType.ALARM, "dep-1"),
        (EventType.FAILURE_ALERT, "cg-1"),
    ]
    activity = flow.lifecycle.get_activity("dep-1", pills.id)
    assert activity.pre_notification_sent and activity.immediate_alarm_sent and activity.failure_alert_sent


def test_completing_before_schedule_suppresses_alarm_and_alert(flow, channel, clock):
    schedule = clock.now + timedelta(minutes=20)
    walk = flow.lifecycle.create_activity(
        "dep-1", {"title": "Walk", "kind": "physical_activity", "schedule": schedule}, caregiver_id="cg-1"
    )

    clock.now = schedule - timedelta(minutes=15)
    flow.run_scheduler()
    flow.lifecycle.update_activity("dep-1", walk.id, {"status": "completed"})
    for minutes in (0, 30):
        flow.run_scheduler(schedule + timedelta(minutes=minutes))

    sent = [m.event for m in channel.sent]
    assert EventType.PRE_NOTIFICATION in sent
    assert EventType.ALARM not in sent
    assert EventType.FAILURE_ALERT not in sent


def test_builders_pick_backends_from_settings(tmp_path):
    assert isinstance(build_store(Settings()), InMemoryRoutineStore)
    assert isinstance(build_channel(Settings()), InMemoryChannel)

    sqlite_url = f"sqlite:///{tmp_path / 'routines.db'}"
    store = build_store(Settings(database_url=sqlite_url))
    assert isinstance(store, SqlRoutineStore)
    assert store.find_by_dependent("dep-1") is None

    channel = build_channel(Settings(notifier_url="http://notifier:8003", http_timeout_seconds=2.0))
    assert isinstance(channel, HttpChannel)
    assert channel.publish_url == "http://notifier:8003/publish"
    channel.close()


def test_flow_from_settings_uses_configured_interval():
    flow = CareRoutineFlow.from_settings(Settings(tick_interval_seconds=15))
    assert flow.tick_scheduler.interval_seconds == 15
    assert flow.tick_scheduler.running is False


def test_close_releases_scheduler_channel_and_store(store, clock):
    channel = HttpChannel(
        "http://notifier:8003",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(202))),
    )
    flow = CareRoutineFlow(store=store, channel=channel, clock=clock)
    flow.tick_scheduler.start()

    flow.close()

    assert flow.tick_scheduler.running is False
    assert channel._client.is_closed
