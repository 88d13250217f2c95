"""
Transition Engine

Consumes TaskEvents from a queue with a fixed pool of workers and runs the
handler bound to each task's status.

Dispatch, per event:
1. Terminal tasks (rejected + cleanupDone) are skipped without store access
2. Snapshots with isProcessing=true are ignored
3. Quiescent statuses (no handler) are ignored
4. A task that failed recently and has not changed since is skipped until
   the retry cooldown elapses
5. try_acquire; losing the race (or an in-flight dispatch) is a no-op
6. The task is re-read under the lock
7. The handler runs and finishes through its TransitionContext
8. The lock is released on every path
"""

import asyncio
import logging
import time
from typing import Optional, Dict, List, Set, Tuple, Callable

from .change_feed import TaskEvent
from .handlers import HANDLERS, Handler, HandlerOutcome, HandlerServices, TransitionContext
from .lock_manager import LockManager
from .task_model import Task, TRANSITION_TABLE
from .task_store import TaskStore

logger = logging.getLogger("transition_engine")


class TransitionEngine:
    """Queue + worker pool running status handlers under the task lock."""

    def __init__(
        self,
        store: TaskStore,
        locks: LockManager,
        services: HandlerServices,
        max_workers: int = 4,
        queue_size: int = 0,
        retry_cooldown: float = 300.0,
        handlers: Optional[Dict[str, Handler]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._store = store
        self._locks = locks
        self._services = services
        self._max_workers = max_workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._retry_cooldown = retry_cooldown
        self._handlers = handlers if handlers is not None else HANDLERS
        self._clock = clock
        self._failures: Dict[str, Tuple[tuple, float]] = {}
        self._inflight: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        self.stats: Dict[str, int] = {
            "dispatched": 0,
            "ignored": 0,
            "cooling_down": 0,
            "lock_busy": 0,
            "errors": 0,
        }

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    def _handler(self, task: Task) -> Optional[Handler]:
        rule = TRANSITION_TABLE.get(task.status)
        return self._handlers.get(rule.handler) if rule else None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._workers = [
            loop.create_task(self._worker(n), name=f"transition-worker-{n}")
            for n in range(self._max_workers)
        ]
        logger.info(f"Transition engine started with {self._max_workers} workers")

    async def submit(self, event: TaskEvent) -> None:
        """Queue an event; waits if the queue is bounded and full."""
        await self._queue.put(event)

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: float = 30.0) -> None:
        """Stop the workers, optionally letting queued events finish first."""
        if drain and self.running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Queue not drained after {timeout}s; cancelling workers")

        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Transition engine stopped")

    async def _worker(self, number: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event.task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["errors"] += 1
                logger.error(f"Worker {number} failed on task {event.task_id}: {e}")
            finally:
                self._queue.task_done()

    # -------------------------------------------------------------------------
    # Retry cooldown
    # -------------------------------------------------------------------------

    def _cooling_down(self, task: Task) -> bool:
        entry = self._failures.get(task.id)
        if entry is None:
            return False
        fingerprint, failed_at = entry
        if fingerprint != task.fingerprint(include_lock=False):
            # Changed since the failure (human edit or a real transition)
            del self._failures[task.id]
            return False
        if self._clock() - failed_at >= self._retry_cooldown:
            del self._failures[task.id]
            return False
        return True

    async def _record_outcome(self, task_id: str, outcome: HandlerOutcome) -> None:
        if outcome != HandlerOutcome.RETRYABLE:
            self._failures.pop(task_id, None)
            return
        current = await self._store.get(task_id)
        if current is not None:
            self._failures[task_id] = (current.fingerprint(include_lock=False), self._clock())

    def clear_cooldowns(self) -> None:
        self._failures.clear()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, task: Task) -> Optional[HandlerOutcome]:
        """
        Run one event through the dispatch rules.

        Returns the handler outcome, or None if the event was ignored before
        a lock was taken.
        """
        if task.is_terminal or task.is_processing or self._handler(task) is None:
            self.stats["ignored"] += 1
            return None

        if self._cooling_down(task):
            self.stats["cooling_down"] += 1
            logger.debug(f"Task {task.id} failed recently and is unchanged; skipping")
            return None

        # Held until the outcome is recorded, so the snapshot written by the
        # release cannot slip past the cooldown
        if task.id in self._inflight or not await self._locks.try_acquire(task.id):
            self.stats["lock_busy"] += 1
            return None

        self._inflight.add(task.id)
        try:
            return await self._run_handler(task)
        finally:
            self._inflight.discard(task.id)

    async def _run_handler(self, task: Task) -> HandlerOutcome:
        self.stats["dispatched"] += 1
        context = TransitionContext(task.id, self._locks, self._services)
        outcome = HandlerOutcome.SKIPPED
        try:
            current = await self._store.get(task.id)
            handler = self._handler(current) if current is not None and not current.is_terminal else None
            if handler is None:
                logger.info(f"Task {task.id} is no longer dispatchable; releasing")
            else:
                logger.info(f"Dispatching {current.status.value} handler for {task.id} \"{current.title}\"")
                outcome = await handler(current, context)
        except asyncio.CancelledError:
            outcome = HandlerOutcome.RETRYABLE
            raise
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Handler failed for task {task.id}: {e}", exc_info=True)
            outcome = HandlerOutcome.RETRYABLE
        finally:
            if not context.finished:
                try:
                    await self._locks.release(task.id)
                except Exception as e:
                    # Left for the startup recovery sweep
                    logger.error(f"Failed to release lock on {task.id}: {e}")

        logger.info(f"Task {task.id}: {outcome.value}")
        await self._record_outcome(task.id, outcome)
        return outcome
