from datetime import datetime, timedelta, timezone

import pytest

from careroutine import CareRoutineFlow
from services.notifier.channel import InMemoryChannel
from services.routines.errors import ChannelError
from services.routines.store import InMemoryRoutineStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FlakyChannel(InMemoryChannel):
    """Raises ChannelError for the listed channel ids."""

    def __init__(self, failing: set[str] | None = None) -> None:
        super().__init__()
        self.failing = set(failing or ())

    def publish(self, channel, event, payload):
        if channel in self.failing:
            raise ChannelError(f"transport down for {channel}")
        super().publish(channel, event, payload)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def store():
    return InMemoryRoutineStore()


@pytest.fixture
def channel():
    return FlakyChannel()


@pytest.fixture
def flow(store, channel, clock):
    return CareRoutineFlow(store=store, channel=channel, clock=clock)
