"""Automation engine: step graph, runners, guard, scheduler and dispatcher."""

from .dispatcher import StartOutcome, TriggerDispatcher
from .engine import AutomationEngine, LoggingEmailSender, build_engine
from .graph import StepGraph
from .guard import GuardOutcome, GuardResult, IdempotencyGuard
from .handlers import AutomationJobHandlers, StepExecutor
from .runners import RUNNERS, Completed, Failed, StepResult, Waiting, check_runnable, run_step
from .scheduler import BatchScheduler
from .validation import validate_step_configuration

__all__ = [
    "AutomationEngine",
    "AutomationJobHandlers",
    "BatchScheduler",
    "Completed",
    "Failed",
    "GuardOutcome",
    "GuardResult",
    "IdempotencyGuard",
    "LoggingEmailSender",
    "RUNNERS",
    "StartOutcome",
    "StepExecutor",
    "StepGraph",
    "StepResult",
    "TriggerDispatcher",
    "Waiting",
    "build_engine",
    "check_runnable",
    "run_step",
    "validate_step_configuration",
]
