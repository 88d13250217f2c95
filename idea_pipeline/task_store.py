"""
Task Store Client

Typed read / write / compare-and-set / watch access to the "tasks"
collection.

TaskStore is the narrow interface the orchestrator depends on.
FileTaskStore keeps the collection in a single JSON document file:
- Writes are atomic (temp file + replace)
- Mutations hold an in-process asyncio.Lock and an advisory file lock, so a
  compare-and-set cannot interleave with another writer
- watch() re-reads the file on every local write and every poll_interval,
  which also picks up writes made by other processes (API server, CLI,
  build pipeline)
"""

import asyncio
import fcntl
import json
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, AsyncIterator, Callable, Set, Tuple

from .task_model import Task, TaskStatus, SYSTEM_FIELDS, utcnow_iso

logger = logging.getLogger("task_store")

COLLECTION = "tasks"


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class TaskStoreError(Exception):
    """Base class for task store failures."""


class TaskNotFoundError(TaskStoreError):
    """The referenced task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class StoreUnavailableError(TaskStoreError):
    """The backing store could not be read or written (transient)."""


def _normalize_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enum values to their stored form and drop system fields."""
    normalized = {}
    for key, value in changes.items():
        if key in SYSTEM_FIELDS:
            continue
        if isinstance(value, Enum):
            value = value.value
        normalized[key] = value
    return normalized


# -----------------------------------------------------------------------------
# Interface
# -----------------------------------------------------------------------------
class TaskStore(ABC):
    """Access to the task collection."""

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def create(self, fields: Dict[str, Any]) -> Task:
        ...

    @abstractmethod
    async def update(self, task_id: str, changes: Dict[str, Any]) -> Task:
        """Merge changes into the task and refresh updatedAt."""

    @abstractmethod
    async def compare_and_set(
        self,
        task_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        """
        Apply changes only if every expected field currently matches.

        A missing field compares equal to None/False.
        """

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        ...

    @abstractmethod
    async def query(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        is_processing: Optional[bool] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[Task]:
        ...

    @abstractmethod
    def watch(self, statuses: Iterable[TaskStatus]) -> AsyncIterator[Task]:
        """
        Live subscription to tasks whose status is in statuses.

        The first pass yields every currently matching task; afterwards one
        snapshot per observed create/update. May raise StoreUnavailableError,
        after which the caller is expected to resubscribe.
        """


# -----------------------------------------------------------------------------
# File-backed Store
# -----------------------------------------------------------------------------
class FileTaskStore(TaskStore):
    """JSON file task store with atomic writes and a polling watch."""

    def __init__(self, path: Path, poll_interval: float = 2.0):
        self._path = Path(path)
        self._lock_path = self._path.with_suffix(self._path.suffix + ".lock")
        self._poll_interval = poll_interval
        self._lock = asyncio.Lock()
        self._watchers: Set[asyncio.Event] = set()
        self._ensure_dirs()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_dirs(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create store directory: {e}")

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @contextmanager
    def _file_lock(self):
        """Advisory lock shared with other processes using the same file."""
        with open(self._lock_path, "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _read_documents(self) -> Dict[str, Dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            state = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise StoreUnavailableError(f"Failed to read {self._path}: {e}") from e
        return state.get(COLLECTION, {})

    def _write_documents(self, documents: Dict[str, Dict[str, Any]]) -> None:
        state = {COLLECTION: documents, "last_updated": utcnow_iso()}
        temp_file = self._path.with_suffix(".tmp")
        try:
            temp_file.write_text(
                json.dumps(state, indent=2, ensure_ascii=False, default=str),
                encoding="utf-8",
            )
            temp_file.replace(self._path)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StoreUnavailableError(f"Failed to write {self._path}: {e}") from e

    def _notify(self) -> None:
        for event in self._watchers:
            event.set()

    async def _mutate(self, fn: Callable[[Dict[str, Dict[str, Any]]], Tuple[Any, bool]]) -> Any:
        """Run fn(documents) under both locks; persist if it reports a change."""
        async with self._lock:
            try:
                with self._file_lock():
                    documents = self._read_documents()
                    result, changed = fn(documents)
                    if changed:
                        self._write_documents(documents)
            except OSError as e:
                raise StoreUnavailableError(f"Store lock failed: {e}") from e
        if changed:
            self._notify()
        return result

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, task_id: str) -> Optional[Task]:
        data = self._read_documents().get(task_id)
        return Task.from_dict(data) if data else None

    async def query(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        is_processing: Optional[bool] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[Task]:
        wanted = {TaskStatus.parse(s) for s in statuses} if statuses is not None else None
        tasks = []
        for data in self._read_documents().values():
            try:
                task = Task.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable task document: {e}")
                continue
            if wanted is not None and task.status not in wanted:
                continue
            if is_processing is not None and task.is_processing != is_processing:
                continue
            tasks.append(task)

        tasks.sort(key=lambda t: t.created_at or "", reverse=newest_first)
        return tasks[:limit] if limit is not None else tasks

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, fields: Dict[str, Any]) -> Task:
        task_id = uuid.uuid4().hex
        now = utcnow_iso()
        document = {
            "status": TaskStatus.DRAFT.value,
            "isProcessing": False,
        }
        document.update(_normalize_changes(fields))
        document.update({"id": task_id, "createdAt": now, "updatedAt": now})
        # Validate before persisting
        task = Task.from_dict(document)
        document["status"] = task.status.value

        def apply(documents):
            documents[task_id] = document
            return None, True

        await self._mutate(apply)
        logger.info(f"Created task {task_id} [{task.status.value}] {task.title}")
        return task

    async def update(self, task_id: str, changes: Dict[str, Any]) -> Task:
        normalized = _normalize_changes(changes)

        def apply(documents):
            document = documents.get(task_id)
            if document is None:
                raise TaskNotFoundError(task_id)
            document.update(normalized)
            document["updatedAt"] = utcnow_iso()
            return Task.from_dict(document), True

        return await self._mutate(apply)

    async def compare_and_set(
        self,
        task_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        normalized = _normalize_changes(changes)
        expected = _normalize_changes(expected)

        def apply(documents):
            document = documents.get(task_id)
            if document is None:
                raise TaskNotFoundError(task_id)
            for key, value in expected.items():
                current = document.get(key)
                if value in (None, False) and current in (None, False):
                    continue
                if current != value:
                    return False, False
            document.update(normalized)
            document["updatedAt"] = utcnow_iso()
            return True, True

        return await self._mutate(apply)

    async def delete(self, task_id: str) -> bool:
        def apply(documents):
            if task_id not in documents:
                return False, False
            del documents[task_id]
            return True, True

        deleted = await self._mutate(apply)
        if deleted:
            logger.info(f"Deleted task {task_id}")
        return deleted

    # -------------------------------------------------------------------------
    # Watch
    # -------------------------------------------------------------------------

    async def watch(self, statuses: Iterable[TaskStatus]) -> AsyncIterator[Task]:
        wanted = {TaskStatus.parse(s) for s in statuses}
        wakeup = asyncio.Event()
        self._watchers.add(wakeup)
        seen: Dict[str, tuple] = {}
        try:
            while True:
                # Cleared before reading so a write during the pass re-arms it
                wakeup.clear()
                documents = self._read_documents()
                changed = []
                for task_id, data in documents.items():
                    try:
                        task = Task.from_dict(data)
                    except (KeyError, ValueError) as e:
                        logger.warning(f"Skipping unreadable task document {task_id}: {e}")
                        continue
                    fingerprint = task.fingerprint()
                    if seen.get(task_id) == fingerprint:
                        continue
                    seen[task_id] = fingerprint
                    if task.status in wanted:
                        changed.append(task)

                for task_id in set(seen) - set(documents):
                    del seen[task_id]

                changed.sort(key=lambda t: t.updated_at or "")
                for task in changed:
                    yield task

                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._watchers.discard(wakeup)
