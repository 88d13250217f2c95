"""
Task Model

The task record tracked by the orchestrator, its status enum and the
transition table the engine dispatches on.

Statuses are stored by value. The original data used Japanese labels
(下書き, FBあり, ...); TaskStatus.parse accepts both forms.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    """
    Task lifecycle statuses.

    Actionable statuses trigger a handler; the rest are quiescent and wait
    for the next human action (or, for REVIEW, are only ever written by the
    build pipeline).
    """
    DRAFT = "draft"
    FEEDBACK_PENDING = "feedback_pending"
    NEW = "new"
    REVISED = "revised"
    APPROVED = "approved"
    DESIGNED = "designed"
    DEVELOPMENT_STARTED = "development_started"
    DEV_READY = "dev_ready"
    REVIEW = "review"
    REJECTED = "rejected"

    @classmethod
    def actionable(cls) -> FrozenSet["TaskStatus"]:
        return frozenset(TRANSITION_TABLE.keys())

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Accept an enum value, enum name or legacy label."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        if text in LEGACY_STATUS_LABELS:
            return LEGACY_STATUS_LABELS[text]
        try:
            return cls(text)
        except ValueError:
            pass
        try:
            return cls[text.upper()]
        except KeyError:
            raise ValueError(f"Unknown task status: {value!r}")


LEGACY_STATUS_LABELS: Dict[str, TaskStatus] = {
    "下書き": TaskStatus.DRAFT,
    "FBあり": TaskStatus.FEEDBACK_PENDING,
    "新着": TaskStatus.NEW,
    "修正済": TaskStatus.REVISED,
    "承認": TaskStatus.APPROVED,
    "設計済": TaskStatus.DESIGNED,
    "開発開始": TaskStatus.DEVELOPMENT_STARTED,
    "開発中": TaskStatus.DEV_READY,
    "確認待ち": TaskStatus.REVIEW,
    "却下": TaskStatus.REJECTED,
}


# -----------------------------------------------------------------------------
# Transition Table
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TransitionRule:
    """Handler binding for one actionable status."""
    handler: str
    on_success: TaskStatus
    on_failure: TaskStatus


TRANSITION_TABLE: Dict[TaskStatus, TransitionRule] = {
    TaskStatus.DRAFT: TransitionRule(
        handler="refine_draft",
        on_success=TaskStatus.NEW,
        on_failure=TaskStatus.DRAFT,
    ),
    TaskStatus.FEEDBACK_PENDING: TransitionRule(
        handler="apply_feedback",
        on_success=TaskStatus.REVISED,
        on_failure=TaskStatus.FEEDBACK_PENDING,
    ),
    TaskStatus.APPROVED: TransitionRule(
        handler="provision_and_design",
        on_success=TaskStatus.DESIGNED,
        on_failure=TaskStatus.APPROVED,
    ),
    TaskStatus.DEVELOPMENT_STARTED: TransitionRule(
        handler="start_development",
        on_success=TaskStatus.DEV_READY,
        on_failure=TaskStatus.DESIGNED,
    ),
    TaskStatus.REJECTED: TransitionRule(
        handler="reject_and_cleanup",
        on_success=TaskStatus.REJECTED,
        on_failure=TaskStatus.REJECTED,
    ),
}

ACTIONABLE_STATUSES: FrozenSet[TaskStatus] = frozenset(TRANSITION_TABLE.keys())

# Fields a handler may never write directly; the lock manager owns isProcessing.
SYSTEM_FIELDS = frozenset({"id", "createdAt", "updatedAt"})

CONTENT_FIELDS = ("title", "overview", "monetization", "target", "difficulty", "type")


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------
@dataclass
class Task:
    """
    A single app idea moving through the pipeline.

    Attributes are snake_case; the stored document uses camelCase keys
    (see to_dict / from_dict).
    """
    id: str
    status: TaskStatus
    title: str = ""
    overview: str = ""
    monetization: str = ""
    target: str = ""
    difficulty: str = ""
    type: str = ""
    is_processing: bool = False
    feedback_comment: Optional[str] = None
    directory_name: Optional[str] = None
    next_steps: Optional[str] = None
    review_url: Optional[str] = None
    deadline: Optional[str] = None
    cleanup_done: Optional[bool] = None
    source: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """Rejected and already cleaned up: never dispatched again."""
        return self.status == TaskStatus.REJECTED and self.cleanup_done is True

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "status": self.status.value,
            "title": self.title,
            "overview": self.overview,
            "monetization": self.monetization,
            "target": self.target,
            "difficulty": self.difficulty,
            "type": self.type,
            "isProcessing": self.is_processing,
            "feedbackComment": self.feedback_comment,
            "directoryName": self.directory_name,
            "nextSteps": self.next_steps,
            "reviewUrl": self.review_url,
            "deadline": self.deadline,
            "cleanupDone": self.cleanup_done,
            "source": self.source,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize a stored document; unknown keys are kept in extra."""
        known = {
            "id", "status", "title", "overview", "monetization", "target",
            "difficulty", "type", "isProcessing", "feedbackComment",
            "directoryName", "nextSteps", "reviewUrl", "deadline",
            "cleanupDone", "source", "createdAt", "updatedAt",
        }
        return cls(
            id=data["id"],
            status=TaskStatus.parse(data.get("status", TaskStatus.DRAFT.value)),
            title=data.get("title") or "",
            overview=data.get("overview") or "",
            monetization=data.get("monetization") or "",
            target=data.get("target") or "",
            difficulty=data.get("difficulty") or "",
            type=data.get("type") or "",
            is_processing=bool(data.get("isProcessing", False)),
            feedback_comment=data.get("feedbackComment"),
            directory_name=data.get("directoryName"),
            next_steps=data.get("nextSteps"),
            review_url=data.get("reviewUrl"),
            deadline=data.get("deadline"),
            cleanup_done=data.get("cleanupDone"),
            source=data.get("source"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def fingerprint(self, include_lock: bool = True) -> tuple:
        """
        Comparable snapshot of the document.

        With include_lock=False the lock flag and updatedAt are left out, so
        two snapshots differing only by a lock/unlock write compare equal.
        """
        data = self.to_dict()
        if not include_lock:
            data.pop("isProcessing", None)
            data.pop("updatedAt", None)
        return tuple(sorted((k, repr(v)) for k, v in data.items()))
