"""
Unit Tests for the Lock Manager

Test coverage for:
- Mutual exclusion on isProcessing
- Release merged with final changes
- Startup recovery and its idempotence
"""

import asyncio

import pytest

from idea_pipeline.lock_manager import LockManager
from idea_pipeline.task_model import TaskStatus


class TestAcquire:
    """Test try_acquire."""

    @pytest.mark.asyncio
    async def test_acquire_sets_flag(self, store, locks):
        task = await store.create({})
        assert await locks.try_acquire(task.id) is True
        assert (await store.get(task.id)).is_processing is True

    @pytest.mark.asyncio
    async def test_second_acquire_fails(self, store, locks):
        task = await store.create({})
        assert await locks.try_acquire(task.id) is True
        assert await locks.try_acquire(task.id) is False

    @pytest.mark.asyncio
    async def test_concurrent_acquirers_only_one_wins(self, store, locks):
        task = await store.create({})
        results = await asyncio.gather(*(locks.try_acquire(task.id) for _ in range(5)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_two_managers_share_the_store_lock(self, store):
        task = await store.create({})
        first, second = LockManager(store), LockManager(store)
        results = await asyncio.gather(first.try_acquire(task.id), second.try_acquire(task.id))
        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_missing_task(self, locks):
        assert await locks.try_acquire("missing") is False

    @pytest.mark.asyncio
    async def test_guards_are_dropped_after_use(self, store, locks):
        tasks = [await store.create({}) for _ in range(3)]
        await asyncio.gather(*(locks.try_acquire(t.id) for t in tasks for _ in range(2)))
        await locks.try_acquire("missing")
        assert locks._guards == {}
        assert locks._guard_users == {}


class TestRelease:
    """Test release."""

    @pytest.mark.asyncio
    async def test_release_writes_changes_with_unlock(self, store, locks):
        task = await store.create({})
        await locks.try_acquire(task.id)
        await locks.release(task.id, {"status": TaskStatus.NEW, "title": "Done"})

        current = await store.get(task.id)
        assert current.is_processing is False
        assert current.status == TaskStatus.NEW
        assert current.title == "Done"

    @pytest.mark.asyncio
    async def test_release_cannot_be_overridden_by_changes(self, store, locks):
        task = await store.create({})
        await locks.try_acquire(task.id)
        await locks.release(task.id, {"isProcessing": True})
        assert (await store.get(task.id)).is_processing is False


class TestRecovery:
    """Test recover_stuck_locks."""

    @pytest.mark.asyncio
    async def test_clears_every_stuck_lock(self, store, locks):
        stuck = [await store.create({"isProcessing": True}) for _ in range(3)]
        free = await store.create({})

        assert await locks.recover_stuck_locks() == 3
        for task in stuck:
            assert (await store.get(task.id)).is_processing is False
        assert (await store.get(free.id)).updated_at == free.updated_at

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, store, locks):
        task = await store.create({"isProcessing": True})
        await locks.recover_stuck_locks()
        after_first = await store.get(task.id)

        assert await locks.recover_stuck_locks() == 0
        assert (await store.get(task.id)).updated_at == after_first.updated_at
