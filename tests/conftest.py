"""
Pytest configuration for idea pipeline tests.

This module provides:
1. Fake collaborators (agent, notification channel)
2. Common fixtures: isolated config, file store, lock manager, services
3. Small async helpers
"""

import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional

import pytest

from idea_pipeline.agent_backend import AgentBackend
from idea_pipeline.config import PipelineConfig
from idea_pipeline.handlers import HandlerServices
from idea_pipeline.lock_manager import LockManager
from idea_pipeline.notification_engine import NotificationEngine
from idea_pipeline.project_provisioner import ProjectProvisioner
from idea_pipeline.task_store import FileTaskStore


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------
class FakeAgent(AgentBackend):
    """
    Agent returning canned responses in order.

    A dict response is sent back as JSON wrapped in chatter, a str verbatim
    and None as a failed invocation. When the queue is empty `default` is
    returned.
    """

    name = "fake-agent"

    def __init__(self, *responses: Any, default: Any = None):
        self.responses = list(responses)
        self.default = default
        self.prompts: List[str] = []

    async def invoke(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, dict):
            return f"Here you go:\n```json\n{json.dumps(response, ensure_ascii=False)}\n```"
        return response


class RecordingChannel:
    """Notification channel that records what it was given."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def __call__(self, notification) -> bool:
        self.sent.append(notification)
        return self.succeed


# -----------------------------------------------------------------------------
# Test Data
# -----------------------------------------------------------------------------
REFINED_IDEA = {
    "title": "Receipt Splitter",
    "overview": "Split group receipts by photo",
    "monetization": "Freemium with a pro tier",
    "target": "Friends sharing bills",
    "difficulty": "★★",
    "type": "iPhone app",
}

DESIGN = {
    "summary": "A camera-first bill splitting app.",
    "features": ["Scan receipt", "Assign items", "Share totals"],
    "screens": [{"name": "Scanner", "description": "Camera view with OCR overlay"}],
    "data_model": [{"name": "Receipt", "fields": ["id: String", "items: List<Item>"]}],
    "packages": ["camera", "google_mlkit_text_recognition"],
    "milestones": ["Scanner", "Assignment", "Sharing"],
}


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    """Config rooted in tmp_path with every external command disabled."""
    return PipelineConfig(
        data_dir=tmp_path / "data",
        projects_dir=tmp_path / "projects",
        poll_interval=0.05,
        provision_command=[],
        build_steps=[],
        preview_command=[],
        tunnel_command=[],
        max_workers=2,
    )


@pytest.fixture
def store(config) -> FileTaskStore:
    return FileTaskStore(config.store_path, poll_interval=config.poll_interval)


@pytest.fixture
def locks(store) -> LockManager:
    return LockManager(store)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def notifier(config, channel) -> NotificationEngine:
    engine = NotificationEngine(log_dir=config.notifications_path)
    engine.register_channel("test", channel)
    return engine


@pytest.fixture
def provisioner(config) -> ProjectProvisioner:
    return ProjectProvisioner(config.projects_dir, command=[])


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def services(agent, provisioner, notifier) -> HandlerServices:
    return HandlerServices(agent=agent, provisioner=provisioner, notifier=notifier)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
async def wait_for_status(store, task_id: str, status, timeout: float = 5.0):
    """Poll the store until the task reaches status (and is unlocked)."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        task = await store.get(task_id)
        if task is not None and task.status == status and not task.is_processing:
            return task
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Task {task_id} did not reach {status}; last seen {task}")
        await asyncio.sleep(0.02)


def make_project(config: PipelineConfig, name: str) -> Path:
    path = Path(config.projects_dir) / name
    path.mkdir(parents=True)
    return path
