from .models import (
    ActivityRecord,
    Base,
    RoutineLogRecord,
    RoutineRecord,
)
from .session import create_session_factory

__all__ = [
    "ActivityRecord",
    "Base",
    "RoutineLogRecord",
    "RoutineRecord",
    "create_session_factory",
]
