"""Job queue abstractions, payloads and the worker."""

from .base import JobEntry, JobOptions, JobQueue, QueuedJob, WorkerQueue
from .jobs import (
    RUN_AUTOMATION_FOR_CONTACT,
    RUN_AUTOMATION_STEP,
    RUN_AUTOMATION_STEP_FOR_CONTACT,
    TRIGGER_AUTOMATIONS_FOR_CONTACT,
    JobResult,
    RunAutomationForContact,
    RunAutomationStep,
    RunAutomationStepForContact,
    TriggerAutomationsForContact,
)
from .memory import InMemoryJobQueue
from .sql import SqlJobQueue
from .worker import JobWorker

__all__ = [
    "InMemoryJobQueue",
    "JobEntry",
    "JobOptions",
    "JobQueue",
    "JobResult",
    "JobWorker",
    "QueuedJob",
    "RUN_AUTOMATION_FOR_CONTACT",
    "RUN_AUTOMATION_STEP",
    "RUN_AUTOMATION_STEP_FOR_CONTACT",
    "RunAutomationForContact",
    "RunAutomationStep",
    "RunAutomationStepForContact",
    "SqlJobQueue",
    "TRIGGER_AUTOMATIONS_FOR_CONTACT",
    "TriggerAutomationsForContact",
    "WorkerQueue",
]
