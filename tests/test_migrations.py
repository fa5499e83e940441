from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

ROOT = Path(__file__).resolve().parents[1]


def _alembic_config(url: str) -> Config:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", url)
    return config


def test_upgrade_and_downgrade_routine_tables(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrate.db'}"
    config = _alembic_config(url)

    command.upgrade(config, "head")
    engine = create_engine(url)
    inspector = inspect(engine)
    assert {"routines", "routine_activities", "routine_log_entries"} <= set(inspector.get_table_names())
    columns = {c["name"] for c in inspector.get_columns("routine_activities")}
    assert {"pre_notification_sent", "immediate_alarm_sent", "failure_alert_sent", "schedule"} <= columns
    index_names = {i["name"] for i in inspector.get_indexes("routine_activities")}
    assert "ix_routine_activities_status_schedule" in index_names

    command.downgrade(config, "base")
    assert "routines" not in inspect(engine).get_table_names()
    engine.dispose()
