"""
Maintenance Jobs

- generate_daily_ideas: fills the board with fresh ideas every morning
- purge_rejected_tasks: deletes rejected task records after a retention period
- DailyScheduler: runs named jobs once a day at a fixed local time
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, time as dt_time
from typing import Optional, List, Dict, Any, Callable, Awaitable

from .agent_backend import AgentBackend
from .notification_engine import NotificationEngine, NotificationTemplates
from .prompts import daily_ideas_prompt
from .task_model import Task, TaskStatus, CONTENT_FIELDS, utcnow, parse_timestamp
from .task_store import TaskStore

logger = logging.getLogger("maintenance")

HISTORY_SIZE = 50
DEFAULT_APP_TYPE = "web app"
DAILY_SOURCE = "daily"


# -----------------------------------------------------------------------------
# Daily Ideas
# -----------------------------------------------------------------------------
async def generate_daily_ideas(
    store: TaskStore,
    agent: AgentBackend,
    notifier: Optional[NotificationEngine] = None,
    count: int = 5,
    deadline_offset_days: int = 1,
) -> List[Task]:
    """
    Ask the agent for new ideas and create them as tasks in status new.

    The most recent titles are passed along so the agent avoids repeats.
    Unusable output creates nothing.
    """
    recent = await store.query(newest_first=True, limit=HISTORY_SIZE)
    existing_titles = [task.title for task in recent if task.title]
    month = datetime.now().strftime("%B %Y")

    data = await agent.request_json(daily_ideas_prompt(month, existing_titles, count))
    ideas = data.get("ideas") if data else None
    if not isinstance(ideas, list):
        logger.warning("Daily ideas: agent returned no idea list")
        return []

    deadline = (utcnow().date() + timedelta(days=deadline_offset_days)).isoformat()
    created: List[Task] = []
    accepted: List[Dict[str, Any]] = []
    for idea in ideas[:count]:
        if not isinstance(idea, dict) or not str(idea.get("title") or "").strip():
            logger.warning(f"Daily ideas: skipping malformed idea {idea!r}")
            continue
        fields = {name: str(idea.get(name) or "").strip() for name in CONTENT_FIELDS}
        fields["type"] = fields["type"] or DEFAULT_APP_TYPE
        task = await store.create({
            **fields,
            "status": TaskStatus.NEW,
            "deadline": deadline,
            "source": DAILY_SOURCE,
        })
        created.append(task)
        accepted.append(fields)
        logger.info(f"Daily idea created: {task.id} {task.title}")

    if created and notifier is not None:
        notifier.notify(NotificationTemplates.daily_ideas(month, accepted))
    logger.info(f"Daily ideas: created {len(created)} tasks")
    return created


# -----------------------------------------------------------------------------
# Rejected Task Purge
# -----------------------------------------------------------------------------
async def purge_rejected_tasks(
    store: TaskStore,
    retention_hours: float = 24.0,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete rejected tasks last updated more than retention_hours ago.

    Tasks without updatedAt, tasks still locked and tasks whose directory
    cleanup has not run yet are kept. Returns the number deleted.
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=retention_hours)
    deleted = 0

    for task in await store.query(statuses=[TaskStatus.REJECTED]):
        updated_at = parse_timestamp(task.updated_at)
        if updated_at is None or updated_at > cutoff:
            continue
        if task.is_processing or (task.directory_name and not task.cleanup_done):
            logger.info(f"Purge: keeping {task.id}, cleanup still pending")
            continue
        if await store.delete(task.id):
            deleted += 1
            logger.info(f"Purged rejected task {task.id} {task.title}")

    logger.info(f"Purge: deleted {deleted} rejected tasks")
    return deleted


# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------
def parse_time_of_day(value: str) -> dt_time:
    """Parse "HH:MM" (24h)."""
    try:
        hours, minutes = value.strip().split(":")
        return dt_time(hour=int(hours), minute=int(minutes))
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM") from e


def next_run_after(at: dt_time, now: datetime) -> datetime:
    """First occurrence of at strictly after now."""
    candidate = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass
class ScheduledJob:
    name: str
    at: dt_time
    func: Callable[[], Awaitable[Any]]
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None


class DailyScheduler:
    """Runs each registered job once a day at its local time."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._jobs: List[ScheduledJob] = []
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs)

    def add_job(self, name: str, at: str, func: Callable[[], Awaitable[Any]]) -> ScheduledJob:
        job = ScheduledJob(name=name, at=parse_time_of_day(at), func=func)
        job.next_run = next_run_after(job.at, self._clock())
        self._jobs.append(job)
        logger.info(f"Scheduled {name} daily at {at} (next: {job.next_run:%Y-%m-%d %H:%M})")
        return job

    async def run_due(self) -> List[str]:
        """Run every job whose time has come; returns the names run."""
        now = self._clock()
        ran = []
        for job in self._jobs:
            if job.next_run is None or job.next_run > now:
                continue
            logger.info(f"Running scheduled job: {job.name}")
            try:
                await job.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled job {job.name} failed: {e}")
            job.last_run = now
            job.next_run = next_run_after(job.at, self._clock())
            ran.append(job.name)
        return ran

    async def run(self) -> None:
        """Loop until stopped."""
        self._running = True
        logger.info("Daily scheduler started")
        try:
            while self._running:
                await self.run_due()
                upcoming = [job.next_run for job in self._jobs if job.next_run]
                delay = 60.0
                if upcoming:
                    delay = max(1.0, min(delay, (min(upcoming) - self._clock()).total_seconds()))
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.info("Daily scheduler cancelled")
        finally:
            self._running = False

    def start(self) -> asyncio.Task:
        self._task = asyncio.get_running_loop().create_task(self.run(), name="daily-scheduler")
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
