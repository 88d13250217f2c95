"""
Lock Manager

Per-task mutual exclusion on the isProcessing flag.

- try_acquire is a single compare-and-set against the store. Attempts for the
  same task are additionally serialized in-process, so two acquirers cannot
  both win even against a store without atomic conditional writes.
- release always clears the flag, merged with the handler's final changes in
  one write.
- recover_stuck_locks clears every flag left set by a crashed process. It
  cannot tell a stuck lock from one held by another live instance, so it must
  run once, at startup, before the change feed subscribes.
"""

import asyncio
import logging
from typing import Optional, Dict, Any

from .task_store import TaskStore, TaskNotFoundError

logger = logging.getLogger("lock_manager")


class LockManager:
    """Acquire / release / recover the isProcessing lock."""

    def __init__(self, store: TaskStore):
        self._store = store
        self._guards: Dict[str, asyncio.Lock] = {}
        self._guard_users: Dict[str, int] = {}

    def _guard(self, task_id: str) -> asyncio.Lock:
        guard = self._guards.get(task_id)
        if guard is None:
            guard = self._guards[task_id] = asyncio.Lock()
        self._guard_users[task_id] = self._guard_users.get(task_id, 0) + 1
        return guard

    def _drop_guard(self, task_id: str) -> None:
        users = self._guard_users.pop(task_id, 1) - 1
        if users > 0:
            self._guard_users[task_id] = users
        else:
            self._guards.pop(task_id, None)

    async def try_acquire(self, task_id: str) -> bool:
        """Set isProcessing=true iff it is currently false/absent."""
        try:
            async with self._guard(task_id):
                try:
                    acquired = await self._store.compare_and_set(
                        task_id,
                        expected={"isProcessing": False},
                        changes={"isProcessing": True},
                    )
                except TaskNotFoundError:
                    logger.warning(f"Cannot lock task {task_id}: not found")
                    return False
        finally:
            self._drop_guard(task_id)

        if acquired:
            logger.debug(f"Lock acquired: {task_id}")
        else:
            logger.debug(f"Lock busy: {task_id}")
        return acquired

    async def release(self, task_id: str, changes: Optional[Dict[str, Any]] = None) -> None:
        """
        Clear isProcessing, together with any final field/status changes.

        The combined write means the unlock and the status transition become
        visible at the same time.
        """
        payload = dict(changes or {})
        payload["isProcessing"] = False
        await self._store.update(task_id, payload)
        status = payload.get("status")
        if status is not None:
            logger.debug(f"Lock released: {task_id} -> {getattr(status, 'value', status)}")
        else:
            logger.debug(f"Lock released: {task_id}")

    async def recover_stuck_locks(self) -> int:
        """
        Clear isProcessing on every task that still has it set.

        Returns the number of tasks unlocked. A second run on a quiet store
        finds nothing and writes nothing.
        """
        stuck = await self._store.query(is_processing=True)
        recovered = 0
        for task in stuck:
            try:
                cleared = await self._store.compare_and_set(
                    task.id,
                    expected={"isProcessing": True},
                    changes={"isProcessing": False},
                )
            except TaskNotFoundError:
                continue
            if cleared:
                recovered += 1
                logger.warning(
                    f"Recovered stuck lock on task {task.id} [{task.status.value}] {task.title}"
                )

        if recovered:
            logger.info(f"Recovered {recovered} stuck task locks")
        else:
            logger.info("No stuck task locks found")
        return recovered
