from __future__ import annotations

import logging
from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from app.db import Base
from app.db.session import create_db_engine
from services.notifier.channel import HttpChannel, InMemoryChannel, NotificationChannel
from services.routines.emergency import EmergencyAlerts
from services.routines.lifecycle import ActivityLifecycleManager
from services.routines.store import InMemoryRoutineStore, RoutineStore, SqlRoutineStore
from services.scheduler.engine import SchedulerEngine, TickReport, TickScheduler
from shared.config import Settings, load_settings
from shared.contracts.models import utcnow

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> RoutineStore:
    if not settings.database_url:
        logger.info("DATABASE_URL not set; using in-memory routine store")
        return InMemoryRoutineStore()

    engine = create_db_engine(settings.database_url)
    if engine.dialect.name == "sqlite":
        # Local development databases are created on the fly; others go through alembic.
        Base.metadata.create_all(engine)
    return SqlRoutineStore(sessionmaker(bind=engine, expire_on_commit=False))


def build_channel(settings: Settings) -> NotificationChannel:
    if not settings.notifier_url:
        logger.info("NOTIFIER_URL not set; notifications are recorded in memory")
        return InMemoryChannel()
    return HttpChannel(settings.notifier_url, timeout=settings.http_timeout_seconds)


class CareRoutineFlow:
    def __init__(
        self,
        store: RoutineStore,
        channel: NotificationChannel,
        clock: Callable[[], datetime] = utcnow,
        tick_interval_seconds: int = 60,
    ) -> None:
        self.store = store
        self.channel = channel
        self.lifecycle = ActivityLifecycleManager(store=store, channel=channel, clock=clock)
        self.emergency = EmergencyAlerts(channel=channel, clock=clock)
        self.engine = SchedulerEngine(store=store, channel=channel, clock=clock)
        self.tick_scheduler = TickScheduler(self.engine, interval_seconds=tick_interval_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CareRoutineFlow":
        return cls(
            store=build_store(settings),
            channel=build_channel(settings),
            tick_interval_seconds=settings.tick_interval_seconds,
        )

    def run_scheduler(self, now: Optional[datetime] = None) -> TickReport:
        return self.engine.tick(now)

    def close(self) -> None:
        self.tick_scheduler.shutdown()
        self.channel.close()
        self.store.close()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_flow() -> CareRoutineFlow:
    return CareRoutineFlow.from_settings(get_settings())
