"""
End-to-End Tests for the Orchestrator

A real file store, change feed and worker pool with a scripted agent and
every external command disabled.
"""

import asyncio

import pytest

from idea_pipeline.orchestrator import Orchestrator
from idea_pipeline.task_model import Task, TaskStatus

from tests.conftest import DESIGN, REFINED_IDEA, FakeAgent, wait_for_status


def make_orchestrator(config, notifier, *responses):
    return Orchestrator(config, agent=FakeAgent(*responses), notifier=notifier)


async def wait_until(store, task_id, predicate, timeout: float = 5.0):
    for _ in range(int(timeout / 0.02)):
        task = await store.get(task_id)
        if task is not None and predicate(task):
            return task
        await asyncio.sleep(0.02)
    raise AssertionError(f"Task {task_id} never matched; last seen {task}")


class TestLifecycle:
    """Drive one idea from draft to review and then reject it."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, config, notifier, channel):
        orchestrator = make_orchestrator(
            config, notifier, REFINED_IDEA, {"name": "receipt_splitter"}, DESIGN
        )
        store = orchestrator.store
        await orchestrator.start(with_scheduler=False)
        try:
            task = await store.create({"title": "split bills", "status": TaskStatus.DRAFT})
            refined = await wait_for_status(store, task.id, TaskStatus.NEW)
            assert refined.title == "Receipt Splitter"
            assert refined.deadline

            await store.update(task.id, {"status": TaskStatus.APPROVED})
            designed = await wait_for_status(store, task.id, TaskStatus.DESIGNED)
            assert designed.directory_name == "receipt_splitter"
            project = config.projects_dir / "receipt_splitter"
            assert (project / "docs" / "DESIGN.md").exists()

            await store.update(task.id, {"status": TaskStatus.DEVELOPMENT_STARTED})
            review = await wait_for_status(store, task.id, TaskStatus.REVIEW)
            assert review.review_url == f"http://localhost:{config.preview_port}"

            await store.update(task.id, {"status": TaskStatus.REJECTED, "cleanupDone": False})
            rejected = await wait_until(store, task.id, lambda t: t.cleanup_done and not t.is_processing)
            assert rejected.status == TaskStatus.REJECTED
            assert rejected.directory_name is None
            assert not project.exists()
        finally:
            await orchestrator.stop()

        types = [n.notification_type.value for n in channel.sent]
        assert types[:2] == ["idea_refined", "project_designed"]
        assert "preview_ready" in types
        assert "task_rejected" in types


class TestStartup:
    """Test startup recovery and the retry sweep."""

    @pytest.mark.asyncio
    async def test_stuck_lock_is_recovered_and_processed(self, config, notifier):
        orchestrator = make_orchestrator(config, notifier, REFINED_IDEA)
        task = await orchestrator.store.create({
            "title": "seed",
            "status": TaskStatus.DRAFT,
            "isProcessing": True,
        })

        await orchestrator.start(with_scheduler=False)
        try:
            refined = await wait_for_status(orchestrator.store, task.id, TaskStatus.NEW)
            assert refined.title == "Receipt Splitter"
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_retry_sweep_queues_actionable_tasks(self, config, notifier):
        orchestrator = make_orchestrator(config, notifier)
        store = orchestrator.store
        await store.create({"title": "retry me", "status": TaskStatus.DRAFT})
        await store.create({"title": "waiting", "status": TaskStatus.NEW})
        await store.create({"title": "locked", "status": TaskStatus.APPROVED, "isProcessing": True})
        await store.create({"title": "gone", "status": TaskStatus.REJECTED, "cleanupDone": True})

        assert await orchestrator.retry_sweep() == 1

    @pytest.mark.asyncio
    async def test_retry_sweep_prunes_feed_state(self, config, notifier):
        orchestrator = make_orchestrator(config, notifier)
        store = orchestrator.store
        locked = await store.create({"title": "locked", "status": TaskStatus.APPROVED, "isProcessing": True})
        moved_on = await store.create({"title": "moved on", "status": TaskStatus.DRAFT})
        orchestrator.feed._is_duplicate(locked)
        orchestrator.feed._is_duplicate(moved_on)
        orchestrator.feed._is_duplicate(Task(id="deleted", status=TaskStatus.DRAFT))
        await store.update(moved_on.id, {"status": TaskStatus.NEW})

        assert await orchestrator.retry_sweep() == 0
        assert set(orchestrator.feed._last_delivered) == {locked.id}

    @pytest.mark.asyncio
    async def test_failed_refinement_keeps_draft(self, config, notifier):
        orchestrator = make_orchestrator(config, notifier, None)
        task = await orchestrator.store.create({"title": "seed", "status": TaskStatus.DRAFT})

        await orchestrator.start(with_scheduler=False)
        try:
            for _ in range(250):
                if orchestrator.agent.prompts:
                    break
                await asyncio.sleep(0.02)
            await orchestrator.engine.join()
            current = await wait_for_status(orchestrator.store, task.id, TaskStatus.DRAFT)
            assert current.title == "seed"
            assert orchestrator.engine.stats["dispatched"] == 1
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, config, notifier):
        orchestrator = make_orchestrator(config, notifier)
        await orchestrator.start(with_scheduler=True)
        assert orchestrator.running
        await orchestrator.stop()
        await orchestrator.stop()
        assert not orchestrator.running
