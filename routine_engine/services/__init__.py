"""Services package exports."""

from routine_engine.services.forgotten_activity_service import ForgottenActivityService
from routine_engine.services.logging_service import configure_logging, get_logger
from routine_engine.services.pattern_service import PatternService
from routine_engine.services.scheduler_service import EngineScheduler

__all__ = [
    "EngineScheduler",
    "ForgottenActivityService",
    "PatternService",
    "configure_logging",
    "get_logger",
]
