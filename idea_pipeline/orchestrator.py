"""
Orchestrator

Wires the store, lock manager, change feed, transition engine, build pipeline,
notifications and the daily scheduler into one long-running process.

Startup order:
1. Recover stuck locks (must finish before anything subscribes)
2. Start the transition engine workers
3. Pump change feed events into the engine
4. Retry sweep and daily scheduler loops
"""

import asyncio
import logging
from typing import Optional

from .agent_backend import AgentBackend, build_agent_backend
from .build_pipeline import BuildPipeline
from .change_feed import ChangeFeed, TaskEvent
from .config import PipelineConfig
from .handlers import HandlerServices
from .lock_manager import LockManager
from .maintenance import DailyScheduler, generate_daily_ideas, purge_rejected_tasks
from .notification_engine import NotificationEngine, build_notification_engine
from .project_provisioner import ProjectProvisioner
from .task_model import ACTIONABLE_STATUSES
from .task_store import TaskStore, FileTaskStore
from .transition_engine import TransitionEngine

logger = logging.getLogger("orchestrator")


class Orchestrator:
    """The task lifecycle orchestrator process."""

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[TaskStore] = None,
        agent: Optional[AgentBackend] = None,
        notifier: Optional[NotificationEngine] = None,
        provisioner: Optional[ProjectProvisioner] = None,
        pipeline: Optional[BuildPipeline] = None,
    ):
        self.config = config
        self.store = store or FileTaskStore(config.store_path, poll_interval=config.poll_interval)
        self.agent = agent or build_agent_backend(config)
        self.notifier = notifier or build_notification_engine(config)
        self.provisioner = provisioner or ProjectProvisioner(
            config.projects_dir, config.provision_command, timeout=config.build_timeout
        )
        self.pipeline = pipeline or BuildPipeline(self.store, config, self.notifier)
        self.locks = LockManager(self.store)
        self.feed = ChangeFeed(self.store, ACTIONABLE_STATUSES)
        self.engine = TransitionEngine(
            self.store,
            self.locks,
            HandlerServices(
                agent=self.agent,
                provisioner=self.provisioner,
                pipeline=self.pipeline,
                notifier=self.notifier,
                deadline_offset_days=config.deadline_offset_days,
            ),
            max_workers=config.max_workers,
            queue_size=config.queue_size,
            retry_cooldown=config.retry_cooldown,
        )
        self.scheduler: Optional[DailyScheduler] = None
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def recover(self) -> int:
        return await self.locks.recover_stuck_locks()

    async def daily_ideas(self):
        return await generate_daily_ideas(
            self.store,
            self.agent,
            self.notifier,
            count=self.config.daily_idea_count,
            deadline_offset_days=self.config.deadline_offset_days,
        )

    async def purge(self) -> int:
        return await purge_rejected_tasks(self.store, self.config.rejected_retention_hours)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, with_scheduler: bool = True) -> None:
        if self._running:
            logger.warning("Orchestrator already running")
            return
        self._running = True
        self._stop_event = asyncio.Event()

        recovered = await self.recover()
        logger.info(f"Startup recovery cleared {recovered} locks")

        self.engine.start()
        self._pump_task = asyncio.create_task(self._pump_loop(), name="change-feed-pump")
        self._sweep_task = asyncio.create_task(self._retry_sweep_loop(), name="retry-sweep")

        if with_scheduler:
            self.scheduler = DailyScheduler()
            self.scheduler.add_job("daily_ideas", self.config.daily_ideas_time, self.daily_ideas)
            self.scheduler.add_job("purge_rejected", self.config.cleanup_time, self.purge)
            self.scheduler.start()

        logger.info("Orchestrator started")

    async def _pump_loop(self) -> None:
        """Forward change feed events to the engine."""
        try:
            async for event in self.feed.events():
                await self.engine.submit(event)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Change feed pump stopped: {e}")
            if self._stop_event is not None:
                self._stop_event.set()

    async def _retry_sweep_loop(self) -> None:
        """Periodically re-offer unlocked actionable tasks to the engine."""
        while self._running:
            try:
                await asyncio.sleep(self.config.retry_sweep_interval)
                await self.retry_sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Retry sweep error: {e}")

    async def retry_sweep(self) -> int:
        """Queue every unlocked, non-terminal actionable task; returns the count."""
        tasks = [t for t in await self.store.query(statuses=ACTIONABLE_STATUSES) if not t.is_terminal]
        # Dedupe state of tasks that left the actionable set is no longer needed
        self.feed.retain(t.id for t in tasks)
        queued = 0
        for task in tasks:
            if task.is_processing:
                continue
            self.feed.forget(task.id)
            await self.engine.submit(TaskEvent(task_id=task.id, task=task))
            queued += 1
        if queued:
            logger.info(f"Retry sweep queued {queued} tasks")
        return queued

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._stop_event is not None:
            await self._stop_event.wait()

    async def stop(self) -> None:
        """Stop loops, let in-flight handlers finish and shut down services."""
        if not self._running:
            return
        self._running = False
        self.feed.stop()

        for task in (self._pump_task, self._sweep_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pump_task = self._sweep_task = None

        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.engine.stop(drain=True)
        await self.pipeline.shutdown()
        await self.notifier.drain()
        logger.info("Orchestrator stopped")

    async def run_forever(self, with_scheduler: bool = True) -> None:
        await self.start(with_scheduler=with_scheduler)
        try:
            await self.wait_stopped()
        finally:
            await self.stop()
