"""
Intake API

HTTP surface for humans and external triggers. It only writes task
documents; the orchestrator picks the changes up through the change feed.

Endpoints:
- GET  /health
- GET  /api/tasks                     Board listing (drafts first)
- POST /api/tasks                     Create a draft
- POST /api/tasks/{task_id}/status    Human status change (+ optional comment)
- POST /webhook                       Shared-secret trigger (approved/build/draft/reject)
"""

import hmac
import logging
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__
from .task_model import Task, TaskStatus
from .task_store import TaskStore, TaskNotFoundError, StoreUnavailableError

logger = logging.getLogger("intake_api")

UNTITLED = "Untitled"
BOARD_FIRST_STATUSES = (TaskStatus.DRAFT, TaskStatus.NEW)
# Written by the orchestrator only
SYSTEM_OWNED_STATUSES = (TaskStatus.DEV_READY, TaskStatus.REVIEW)

WEBHOOK_ACTIONS: Dict[str, TaskStatus] = {
    "approved": TaskStatus.APPROVED,
    "build": TaskStatus.DEVELOPMENT_STARTED,
    "draft": TaskStatus.DRAFT,
    "reject": TaskStatus.REJECTED,
}


# -----------------------------------------------------------------------------
# Request / Response Models
# -----------------------------------------------------------------------------
class TaskCreateRequest(BaseModel):
    """A new idea seed."""
    title: Optional[str] = Field(None, max_length=200)
    overview: Optional[str] = Field(None, max_length=5000)


class StatusUpdateRequest(BaseModel):
    """Human status change; status may be a value, name or legacy label."""
    status: str = Field(..., min_length=1)
    comment: Optional[str] = Field(None, max_length=5000)


class WebhookRequest(BaseModel):
    action: str
    secret: Optional[str] = None
    task_id: Optional[str] = Field(None, alias="taskId")
    project_name: Optional[str] = Field(None, alias="projectName")

    model_config = {"populate_by_name": True}


class TaskResponse(BaseModel):
    id: str
    status: str
    title: str
    overview: str
    monetization: str
    target: str
    difficulty: str
    type: str
    is_processing: bool = Field(..., serialization_alias="isProcessing")
    feedback_comment: Optional[str] = Field(None, serialization_alias="feedbackComment")
    directory_name: Optional[str] = Field(None, serialization_alias="directoryName")
    review_url: Optional[str] = Field(None, serialization_alias="reviewUrl")
    deadline: Optional[str] = None
    created_at: Optional[str] = Field(None, serialization_alias="createdAt")
    updated_at: Optional[str] = Field(None, serialization_alias="updatedAt")

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            status=task.status.value,
            title=task.title,
            overview=task.overview,
            monetization=task.monetization,
            target=task.target,
            difficulty=task.difficulty,
            type=task.type,
            is_processing=task.is_processing,
            feedback_comment=task.feedback_comment,
            directory_name=task.directory_name,
            review_url=task.review_url,
            deadline=task.deadline,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


def board_tasks(tasks: List[Task]) -> List[Task]:
    """
    Order tasks for the board: drafts and new ideas first, then the rest,
    each group newest first. Non-draft tasks with neither a real title nor
    an overview are hidden.
    """
    visible = []
    for task in tasks:
        if task.status in BOARD_FIRST_STATUSES:
            visible.append(task)
            continue
        has_title = bool(task.title) and task.title != UNTITLED
        if has_title or task.overview:
            visible.append(task)

    newest_first = sorted(visible, key=lambda t: t.created_at or "", reverse=True)
    return sorted(newest_first, key=lambda t: t.status not in BOARD_FIRST_STATUSES)


# -----------------------------------------------------------------------------
# App Factory
# -----------------------------------------------------------------------------
def create_app(store: TaskStore, config) -> FastAPI:
    app = FastAPI(
        title="Idea Pipeline - Intake API",
        description="Idea board and trigger endpoints for the task lifecycle orchestrator",
        version=__version__,
    )

    async def _get_task(task_id: str) -> Task:
        task = await store.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return task

    async def _set_status(task: Task, status: TaskStatus, comment: Optional[str] = None) -> Task:
        busy = HTTPException(
            status_code=409,
            detail=f"Task {task.id} is being processed; try again shortly",
        )
        if task.is_processing:
            raise busy
        changes: Dict[str, Any] = {"status": status}
        if comment is not None:
            changes["feedbackComment"] = comment
        if status == TaskStatus.REJECTED:
            changes["cleanupDone"] = False
        try:
            # The lock may have been taken since task was read
            written = await store.compare_and_set(task.id, expected={"isProcessing": False}, changes=changes)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail=f"Task not found: {task.id}")
        if not written:
            raise busy
        logger.info(f"Status change: {task.id} {task.status.value} -> {status.value}")
        return await _get_task(task.id)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": __version__}

    @app.get("/api/tasks")
    async def list_tasks(status: Optional[str] = None):
        statuses = None
        if status:
            try:
                statuses = [TaskStatus.parse(status)]
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
        try:
            tasks = await store.query(statuses=statuses)
        except StoreUnavailableError as e:
            logger.error(f"Task listing failed: {e}")
            raise HTTPException(status_code=503, detail="Task store unavailable")
        return [
            TaskResponse.from_task(t).model_dump(by_alias=True) for t in board_tasks(tasks)
        ]

    @app.post("/api/tasks", status_code=201)
    async def add_task(request: TaskCreateRequest):
        task = await store.create({
            "title": (request.title or "").strip() or UNTITLED,
            "overview": (request.overview or "").strip(),
            "status": TaskStatus.DRAFT,
            "source": "api",
        })
        return TaskResponse.from_task(task).model_dump(by_alias=True)

    @app.post("/api/tasks/{task_id}/status")
    async def update_status(task_id: str, request: StatusUpdateRequest):
        try:
            status = TaskStatus.parse(request.status)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if status in SYSTEM_OWNED_STATUSES:
            raise HTTPException(status_code=400, detail=f"Status {status.value} is set by the pipeline")

        task = await _get_task(task_id)
        updated = await _set_status(task, status, request.comment)
        return TaskResponse.from_task(updated).model_dump(by_alias=True)

    @app.post("/webhook")
    async def webhook(request: WebhookRequest):
        expected = config.webhook_secret
        if not expected or not hmac.compare_digest(request.secret or "", expected):
            logger.warning("Unauthorized webhook attempt")
            raise HTTPException(status_code=401, detail="Unauthorized")

        status = WEBHOOK_ACTIONS.get(request.action)
        if status is None:
            raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

        task = None
        if request.task_id:
            task = await _get_task(request.task_id)
        elif request.project_name:
            for candidate in await store.query():
                if request.project_name in (candidate.title, candidate.directory_name):
                    task = candidate
                    break
            if task is None:
                raise HTTPException(status_code=404, detail=f"No task for project {request.project_name}")
        else:
            raise HTTPException(status_code=400, detail="taskId or projectName is required")

        logger.info(f"Webhook {request.action} for task {task.id} ({task.title})")
        updated = await _set_status(task, status)
        return {"status": "accepted", "taskId": updated.id, "taskStatus": updated.status.value}

    return app
