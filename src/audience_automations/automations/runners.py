"""Per-subtype step runners.

Each runner performs one step's effect for one contact and says where the
contact goes next. Runners are registered in ``RUNNERS``, a closed table that
must cover every non-trigger subtype; this is checked when the module loads.

Runners trust stored configuration (it is validated on write). Unusable
configuration raises ``StepConfigurationError``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, TypeVar, Union

import pydantic
import structlog

from audience_automations.automations.context import ExecutionContext, load_audience_context
from audience_automations.automations.validation import validate_step_configuration
from audience_automations.exceptions import StepConfigurationError, ValidationError
from audience_automations.models import Contact
from audience_automations.models.automation import (
    SUBTYPES_BY_TYPE,
    AutomationStep,
    Branch,
    IfElseConfiguration,
    StepSubtype,
    StepType,
    TagConfiguration,
    UpdateContactAttributesConfiguration,
    WaitForDurationConfiguration,
)
from audience_automations.segments.compiler import compile_filter

logger = structlog.get_logger()

C = TypeVar("C", bound=pydantic.BaseModel)


@dataclass(frozen=True)
class Completed:
    """The step is done; continue at ``next_step_id`` (None halts the automation)."""

    next_step_id: Optional[str]


@dataclass(frozen=True)
class Failed:
    reason: str


@dataclass(frozen=True)
class Waiting:
    """The step is not done yet; run it again at or after ``resume_at``."""

    resume_at: datetime


StepResult = Union[Completed, Failed, Waiting]

Runner = Callable[[AutomationStep, Contact, ExecutionContext], StepResult]


def run_step(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    try:
        runner = RUNNERS[step.subtype]
    except KeyError:
        raise StepConfigurationError(f"Step {step.id} of subtype {step.subtype.value} is not runnable") from None
    return runner(step, contact, ctx)


def check_runnable(step: AutomationStep) -> None:
    """Raise ``StepConfigurationError`` for a stored step no runner can use.

    Callers check before touching the ledger, so a broken step leaves no row.
    """

    if step.subtype not in RUNNERS:
        raise StepConfigurationError(f"Step {step.id} of subtype {step.subtype.value} is not runnable")
    try:
        validate_step_configuration(
            step.type,
            step.subtype,
            step.configuration,
            email_id=step.email_id,
            tag_id=step.tag_id,
            audience_id=step.audience_id,
        )
    except ValidationError as e:
        raise StepConfigurationError(f"Step {step.id} has invalid configuration: {e}") from e


def _configuration(step: AutomationStep, model: type[C]) -> C:
    try:
        return model.model_validate(step.configuration)
    except pydantic.ValidationError as e:
        raise StepConfigurationError(f"Step {step.id} has invalid configuration: {e}") from e


def _reference(step: AutomationStep, name: str) -> str:
    value = getattr(step, name)
    if not value:
        raise StepConfigurationError(f"Step {step.id} ({step.subtype.value}) is missing {name}")
    return value


def _next(step: AutomationStep, ctx: ExecutionContext) -> Completed:
    child = ctx.automations.find_child_step(step.id)
    return Completed(child.id if child else None)


def run_empty(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    return _next(step, ctx)


def run_send_email(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    email_id = _reference(step, "email_id")
    ctx.email_sender.send_transactional(email_id, contact.id)
    logger.info("automation_email_enqueued", step_id=step.id, contact_id=contact.id, email_id=email_id)
    return _next(step, ctx)


def _tag_ids(step: AutomationStep) -> list[str]:
    tag_id = _reference(step, "tag_id")
    extra = _configuration(step, TagConfiguration).tag_ids
    return [tag_id] + [t for t in extra if t != tag_id]


def run_add_tag(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    ctx.contacts.attach_tags(contact.id, _tag_ids(step))
    return _next(step, ctx)


def run_remove_tag(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    ctx.contacts.detach_tags(contact.id, _tag_ids(step))
    return _next(step, ctx)


def run_subscribe_to_audience(
    step: AutomationStep, contact: Contact, ctx: ExecutionContext
) -> StepResult:
    audience_id = _reference(step, "audience_id")
    copied_id = ctx.contacts.subscribe_to_audience(contact.id, audience_id)
    if copied_id is None:
        return Failed(f"Audience {audience_id} does not exist")
    logger.info(
        "automation_contact_subscribed",
        step_id=step.id,
        contact_id=contact.id,
        audience_id=audience_id,
        subscribed_contact_id=copied_id,
    )
    return _next(step, ctx)


def run_unsubscribe_from_audience(
    step: AutomationStep, contact: Contact, ctx: ExecutionContext
) -> StepResult:
    _reference(step, "audience_id")
    ctx.contacts.unsubscribe(contact.id)
    return _next(step, ctx)


def run_update_attributes(
    step: AutomationStep, contact: Contact, ctx: ExecutionContext
) -> StepResult:
    config = _configuration(step, UpdateContactAttributesConfiguration)
    ctx.contacts.update_attributes(contact.id, config.attributes)
    return _next(step, ctx)


def run_if_else(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    config = _configuration(step, IfElseConfiguration)
    audience = load_audience_context(ctx.contacts, contact.audience_id)
    predicate = compile_filter(config.filter_groups, audience, now=ctx.now)

    branch = Branch.YES if ctx.contacts.contact_matches(contact.id, predicate) else Branch.NO
    child = ctx.automations.find_child_step(step.id, branch)
    if child is None:
        logger.warning(
            "automation_branch_empty", step_id=step.id, contact_id=contact.id, branch=branch.value
        )
        return Completed(None)

    logger.debug("automation_branch_taken", step_id=step.id, contact_id=contact.id, branch=branch.value)
    return Completed(child.id)


def run_wait_for_duration(
    step: AutomationStep, contact: Contact, ctx: ExecutionContext
) -> StepResult:
    config = _configuration(step, WaitForDurationConfiguration)
    resume_at = ctx.entry.created_at + timedelta(seconds=config.delay)
    if ctx.now < resume_at:
        return Waiting(resume_at)
    return _next(step, ctx)


def run_end(step: AutomationStep, contact: Contact, ctx: ExecutionContext) -> StepResult:
    return Completed(None)


RUNNERS: dict[StepSubtype, Runner] = {
    StepSubtype.ACTION_EMPTY: run_empty,
    StepSubtype.ACTION_SEND_EMAIL: run_send_email,
    StepSubtype.ACTION_ADD_TAG: run_add_tag,
    StepSubtype.ACTION_REMOVE_TAG: run_remove_tag,
    StepSubtype.ACTION_SUBSCRIBE_TO_AUDIENCE: run_subscribe_to_audience,
    StepSubtype.ACTION_UNSUBSCRIBE_FROM_AUDIENCE: run_unsubscribe_from_audience,
    StepSubtype.ACTION_UPDATE_CONTACT_ATTRIBUTES: run_update_attributes,
    StepSubtype.RULE_IF_ELSE: run_if_else,
    StepSubtype.RULE_WAIT_FOR_DURATION: run_wait_for_duration,
    StepSubtype.END: run_end,
}


def _check_registry() -> None:
    runnable = frozenset(StepSubtype) - SUBTYPES_BY_TYPE[StepType.TRIGGER]
    missing = runnable - RUNNERS.keys()
    if missing:
        names = ", ".join(sorted(s.value for s in missing))
        raise RuntimeError(f"No runner registered for step subtypes: {names}")


_check_registry()
