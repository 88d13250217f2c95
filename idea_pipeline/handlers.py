"""
Transition Handlers

One handler per actionable status. A handler receives the task (re-read
under the lock) and a TransitionContext, and ends with exactly one
context.finish(changes) call: the status/field changes and the lock release
are written together.

Handlers never raise for expected failures (agent unavailable, malformed
response, provisioning failure); they finish without a status change and
return RETRYABLE. The transition engine releases the lock if a handler raises
or returns without finishing.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Awaitable

from .agent_backend import AgentBackend
from .build_pipeline import BuildPipeline
from .lock_manager import LockManager
from .notification_engine import NotificationEngine, NotificationTemplates, Notification
from .project_provisioner import (
    ProjectProvisioner,
    ProvisioningError,
    sanitize_identifier,
    is_usable_design,
    write_design_document,
)
from .prompts import (
    refine_draft_prompt,
    apply_feedback_prompt,
    project_identifier_prompt,
    design_document_prompt,
)
from .task_model import Task, TaskStatus, CONTENT_FIELDS, TRANSITION_TABLE, utcnow

logger = logging.getLogger("handlers")

DEFAULT_TITLE = "Untitled"
DEFAULT_FEEDBACK = "no instructions"
# Older tasks only carry the project directory inside nextSteps
NEXT_STEPS_DIRECTORY = re.compile(r"Directory:\s*([A-Za-z0-9_\-]+)")


class HandlerOutcome(str, Enum):
    """Result of one handler run, used for logging and retry bookkeeping."""
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    REVERTED = "reverted"
    SKIPPED = "skipped"


@dataclass
class HandlerServices:
    """Collaborators available to every handler."""
    agent: AgentBackend
    provisioner: ProjectProvisioner
    pipeline: Optional[BuildPipeline] = None
    notifier: Optional[NotificationEngine] = None
    deadline_offset_days: int = 1


class TransitionContext:
    """Per-dispatch handle that owns the lock release."""

    def __init__(self, task_id: str, locks: LockManager, services: HandlerServices):
        self.task_id = task_id
        self.services = services
        self._locks = locks
        self.finished = False
        self.changes: Dict[str, Any] = {}

    async def finish(self, changes: Optional[Dict[str, Any]] = None) -> None:
        """Write changes and clear isProcessing in one store write."""
        if self.finished:
            raise RuntimeError(f"Transition for {self.task_id} already finished")
        self.changes = dict(changes or {})
        await self._locks.release(self.task_id, self.changes)
        self.finished = True

    def notify(self, notification: Notification) -> None:
        if self.services.notifier is not None:
            self.services.notifier.notify(notification)


Handler = Callable[[Task, TransitionContext], Awaitable[HandlerOutcome]]


def _idea_fields(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """The six idea fields, or None unless all are non-empty strings."""
    if not data:
        return None
    fields = {}
    for name in CONTENT_FIELDS:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            return None
        fields[name] = value.strip()
    return fields


# -----------------------------------------------------------------------------
# Refine Draft: draft -> new
# -----------------------------------------------------------------------------
async def refine_draft(task: Task, context: TransitionContext) -> HandlerOutcome:
    services = context.services
    prompt = refine_draft_prompt(task.title or DEFAULT_TITLE, task.overview)
    fields = _idea_fields(await services.agent.request_json(prompt))
    if fields is None:
        logger.warning(f"Refine draft {task.id}: no usable plan from agent; will retry")
        await context.finish()
        return HandlerOutcome.RETRYABLE

    deadline = (utcnow().date() + timedelta(days=services.deadline_offset_days)).isoformat()
    await context.finish({**fields, "status": TaskStatus.NEW, "deadline": deadline})
    logger.info(f"Draft refined: {task.id} \"{task.title}\" -> \"{fields['title']}\"")
    context.notify(NotificationTemplates.idea_refined(task.id, task.title or DEFAULT_TITLE, fields["title"]))
    return HandlerOutcome.SUCCEEDED


# -----------------------------------------------------------------------------
# Apply Feedback: feedback_pending -> revised
# -----------------------------------------------------------------------------
async def apply_feedback(task: Task, context: TransitionContext) -> HandlerOutcome:
    services = context.services
    prompt = apply_feedback_prompt(task, task.feedback_comment or DEFAULT_FEEDBACK)
    fields = _idea_fields(await services.agent.request_json(prompt))
    if fields is None:
        logger.warning(f"Apply feedback {task.id}: no usable revision from agent; will retry")
        await context.finish()
        return HandlerOutcome.RETRYABLE

    await context.finish({**fields, "status": TaskStatus.REVISED})
    logger.info(f"Feedback applied: {task.id} \"{fields['title']}\"")
    context.notify(NotificationTemplates.feedback_applied(task.id, fields["title"]))
    return HandlerOutcome.SUCCEEDED


# -----------------------------------------------------------------------------
# Provision & Design: approved -> designed
# -----------------------------------------------------------------------------
async def _choose_identifier(task: Task, agent: AgentBackend) -> str:
    if task.directory_name:
        return sanitize_identifier(task.directory_name)
    data = await agent.request_json(project_identifier_prompt(task))
    proposed = data.get("name") if data else None
    return sanitize_identifier(proposed if isinstance(proposed, str) else None)


def _next_steps(directory_name: str) -> str:
    return "\n".join([
        f"Directory: {directory_name}",
        "Design: docs/DESIGN.md",
        "Review the design, then move the task to development_started to build it.",
    ])


async def provision_and_design(task: Task, context: TransitionContext) -> HandlerOutcome:
    services = context.services
    identifier = await _choose_identifier(task, services.agent)

    try:
        project_dir = await services.provisioner.provision(identifier)
    except ProvisioningError as e:
        logger.warning(f"Provisioning {identifier} for {task.id} failed: {e}")
        await context.finish()
        return HandlerOutcome.RETRYABLE

    directory_name = project_dir.name
    design = await services.agent.request_json(design_document_prompt(task))
    if not is_usable_design(design):
        logger.warning(f"Design for {task.id} is empty; keeping {directory_name} and retrying later")
        await context.finish({"directoryName": directory_name})
        return HandlerOutcome.RETRYABLE

    try:
        write_design_document(project_dir, task, design)
    except OSError as e:
        logger.error(f"Failed to write design document for {task.id}: {e}")
        await context.finish({"directoryName": directory_name})
        return HandlerOutcome.RETRYABLE

    await context.finish({
        "directoryName": directory_name,
        "nextSteps": _next_steps(directory_name),
        "status": TaskStatus.DESIGNED,
    })
    logger.info(f"Project designed: {task.id} -> {directory_name}")
    context.notify(NotificationTemplates.project_designed(task.id, task.title, directory_name))
    return HandlerOutcome.SUCCEEDED


# -----------------------------------------------------------------------------
# Start Development: development_started -> dev_ready (-> review | designed)
# -----------------------------------------------------------------------------
def resolve_directory_name(task: Task) -> Optional[str]:
    """directoryName, or the "Directory: <name>" line of nextSteps."""
    if task.directory_name:
        return task.directory_name
    if task.next_steps:
        match = NEXT_STEPS_DIRECTORY.search(task.next_steps)
        if match:
            logger.warning(
                f"Task {task.id} has no directoryName; using {match.group(1)} from nextSteps"
            )
            return match.group(1)
    return None


async def start_development(task: Task, context: TransitionContext) -> HandlerOutcome:
    services = context.services
    directory_name = resolve_directory_name(task)
    changes: Dict[str, Any] = {}
    if directory_name and not task.directory_name:
        changes["directoryName"] = directory_name

    if not directory_name:
        logger.warning(f"Cannot start development for {task.id}: no project directory recorded")
        await context.finish(changes)
        return HandlerOutcome.RETRYABLE

    project_dir: Path = services.provisioner.path_for(directory_name)
    if not project_dir.is_dir():
        logger.warning(f"Cannot start development for {task.id}: {project_dir} does not exist")
        await context.finish(changes)
        return HandlerOutcome.RETRYABLE

    if services.pipeline is None:
        logger.error(f"No build pipeline configured; moving {task.id} back to designed")
        await context.finish({**changes, "status": TaskStatus.DESIGNED})
        return HandlerOutcome.REVERTED

    await context.finish({**changes, "status": TaskStatus.DEV_READY})
    services.pipeline.start(task.id, project_dir)
    logger.info(f"Development started: {task.id} in {project_dir}")
    context.notify(NotificationTemplates.development_started(task.id, task.title, project_dir.name))
    return HandlerOutcome.SUCCEEDED


# -----------------------------------------------------------------------------
# Reject & Cleanup: rejected -> rejected + cleanupDone
# -----------------------------------------------------------------------------
async def reject_and_cleanup(task: Task, context: TransitionContext) -> HandlerOutcome:
    services = context.services
    changes: Dict[str, Any] = {"cleanupDone": True}
    removed = False

    if services.pipeline is not None:
        # The build must not outlive the rejection or write over it
        if await services.pipeline.cancel(task.id):
            logger.info(f"Cancelled running build of rejected task {task.id}")
        await services.pipeline.stop_preview(task.id)

    if task.directory_name:
        removed = await asyncio.to_thread(services.provisioner.remove, task.directory_name)
        if removed:
            changes["directoryName"] = None
        else:
            logger.warning(f"Project directory of {task.id} could not be fully removed")

    await context.finish(changes)
    logger.info(f"Rejected task cleaned up: {task.id}")
    context.notify(NotificationTemplates.task_rejected(task.id, task.title, removed))
    return HandlerOutcome.SUCCEEDED


HANDLERS: Dict[str, Handler] = {
    "refine_draft": refine_draft,
    "apply_feedback": apply_feedback,
    "provision_and_design": provision_and_design,
    "start_development": start_development,
    "reject_and_cleanup": reject_and_cleanup,
}


def handler_for(status: TaskStatus) -> Optional[Handler]:
    """Handler bound to status in the transition table, or None if quiescent."""
    rule = TRANSITION_TABLE.get(status)
    return HANDLERS[rule.handler] if rule else None
