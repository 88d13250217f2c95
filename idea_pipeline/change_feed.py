"""
Change Feed Adapter

Turns the store's live subscription into a deduplicated stream of
TaskEvent(task_id, task) pairs for the actionable statuses.

Delivery is at-least-once: after a transient store failure the feed
resubscribes, and the store replays every currently matching task, so
changes made during the outage are not lost. Duplicates are safe because the
transition engine locks before acting.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Iterable, AsyncIterator

from .task_model import Task, TaskStatus, ACTIONABLE_STATUSES
from .task_store import TaskStore, StoreUnavailableError

logger = logging.getLogger("change_feed")

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0


@dataclass(frozen=True)
class TaskEvent:
    """One observed creation or update of a task."""
    task_id: str
    task: Task


class ChangeFeed:
    """Resubscribing, deduplicating subscription to task changes."""

    def __init__(
        self,
        store: TaskStore,
        statuses: Iterable[TaskStatus] = ACTIONABLE_STATUSES,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
    ):
        self._store = store
        self._statuses = frozenset(statuses)
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._last_delivered: Dict[str, tuple] = {}
        self._running = False
        self.resubscriptions = 0

    def _is_duplicate(self, task: Task) -> bool:
        if task.is_terminal:
            # Never dispatched again; no dedupe state is kept for it
            self._last_delivered.pop(task.id, None)
            return False
        fingerprint = task.fingerprint()
        if self._last_delivered.get(task.id) == fingerprint:
            return True
        self._last_delivered[task.id] = fingerprint
        return False

    def forget(self, task_id: str) -> None:
        """Drop dedupe state so the next snapshot of task_id is delivered."""
        self._last_delivered.pop(task_id, None)

    def retain(self, task_ids: Iterable[str]) -> int:
        """Drop dedupe state for every task not in task_ids; returns the count."""
        keep = set(task_ids)
        stale = [task_id for task_id in self._last_delivered if task_id not in keep]
        for task_id in stale:
            del self._last_delivered[task_id]
        return len(stale)

    def stop(self) -> None:
        self._running = False

    async def events(self) -> AsyncIterator[TaskEvent]:
        """Yield events for the lifetime of the feed."""
        self._running = True
        backoff = self._initial_backoff
        statuses = ", ".join(sorted(s.value for s in self._statuses))
        logger.info(f"Subscribing to task changes (statuses: {statuses})")

        while self._running:
            try:
                async for task in self._store.watch(self._statuses):
                    backoff = self._initial_backoff
                    if not self._running:
                        break
                    if self._is_duplicate(task):
                        continue
                    yield TaskEvent(task_id=task.id, task=task)
                else:
                    # Subscription ended without error; resubscribe
                    if self._running:
                        logger.warning("Task subscription ended; resubscribing")
                        self.resubscriptions += 1
                        await asyncio.sleep(backoff)
            except StoreUnavailableError as e:
                if not self._running:
                    break
                self.resubscriptions += 1
                logger.warning(f"Task subscription lost: {e}; resubscribing in {backoff:.1f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self._max_backoff)

        logger.info("Change feed stopped")
