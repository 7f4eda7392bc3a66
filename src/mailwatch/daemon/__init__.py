"""Long-running tasks: session supervisor and event dispatcher."""

from .dispatcher import EventDispatcher, PipelineRun, StageOutcome
from .supervisor import BackoffState, SessionSupervisor

__all__ = [
    "BackoffState",
    "EventDispatcher",
    "PipelineRun",
    "SessionSupervisor",
    "StageOutcome",
]
