"""Engine package for attendance reconciliation."""

from .config import EngineSettings, load_settings
from .engine import AttendanceEngine
from .models import Observation, ParticipantStatus, SessionState, StoreError
from .scheduler import LoopScheduler, ManualScheduler
from .security import derive_submission_key, generate_token
from .store import InMemoryStateStore, PostgresStateStore, StateStore, create_store

__all__ = [
    "AttendanceEngine",
    "create_store",
    "derive_submission_key",
    "EngineSettings",
    "generate_token",
    "InMemoryStateStore",
    "load_settings",
    "LoopScheduler",
    "ManualScheduler",
    "Observation",
    "ParticipantStatus",
    "PostgresStateStore",
    "SessionState",
    "StateStore",
    "StoreError",
]
