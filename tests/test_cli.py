"""
Unit Tests for the command line interface
"""

import asyncio
import json
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from idea_pipeline import agent_backend
from idea_pipeline.cli import app
from idea_pipeline.task_model import TaskStatus, utcnow
from idea_pipeline.task_store import FileTaskStore

from tests.conftest import REFINED_IDEA, FakeAgent

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "idea_pipeline.yaml"
    path.write_text(
        f"data_dir: {tmp_path / 'data'}\n"
        f"projects_dir: {tmp_path / 'projects'}\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def cli_store(tmp_path):
    return FileTaskStore(tmp_path / "data" / "tasks.json")


def invoke(config_file, *args):
    return runner.invoke(app, ["--config", str(config_file), *args])


class TestBoardCommands:
    """Test add and list."""

    def test_add_then_list(self, config_file, cli_store):
        result = invoke(config_file, "add", "Receipt app", "--overview", "split bills")
        assert result.exit_code == 0
        assert "Created draft" in result.output

        tasks = asyncio.run(cli_store.query())
        assert len(tasks) == 1
        assert tasks[0].status == TaskStatus.DRAFT
        assert tasks[0].source == "cli"

        result = invoke(config_file, "list")
        assert result.exit_code == 0
        assert "Receipt app" in result.output
        assert tasks[0].id in result.output

    def test_list_empty(self, config_file):
        result = invoke(config_file, "list", "--status", "review")
        assert result.exit_code == 0
        assert "No tasks." in result.output

    def test_list_bad_status(self, config_file):
        result = invoke(config_file, "list", "--status", "shipped")
        assert result.exit_code == 2


class TestMaintenanceCommands:
    """Test recover, purge and daily."""

    def test_recover(self, config_file, cli_store):
        asyncio.run(cli_store.create({"title": "Stuck", "isProcessing": True}))
        result = invoke(config_file, "recover")
        assert result.exit_code == 0
        assert "Recovered 1 stuck lock(s)." in result.output
        assert asyncio.run(cli_store.query(is_processing=True)) == []

    def test_purge(self, config_file, cli_store, tmp_path):
        task = asyncio.run(cli_store.create({"status": TaskStatus.REJECTED, "cleanupDone": True}))
        state = json.loads(cli_store.path.read_text(encoding="utf-8"))
        state["tasks"][task.id]["updatedAt"] = (utcnow() - timedelta(hours=2)).isoformat()
        cli_store.path.write_text(json.dumps(state), encoding="utf-8")

        assert "Deleted 0 rejected task(s)." in invoke(config_file, "purge").output
        result = invoke(config_file, "purge", "--hours", "1")
        assert "Deleted 1 rejected task(s)." in result.output

    def test_daily(self, config_file, cli_store, monkeypatch):
        fake = FakeAgent({"ideas": [REFINED_IDEA]})
        monkeypatch.setattr(agent_backend, "build_agent_backend", lambda config: fake)

        result = invoke(config_file, "daily")
        assert result.exit_code == 0
        assert "Receipt Splitter" in result.output
        assert [t.status for t in asyncio.run(cli_store.query())] == [TaskStatus.NEW]

    def test_daily_without_ideas_fails(self, config_file, monkeypatch):
        monkeypatch.setattr(agent_backend, "build_agent_backend", lambda config: FakeAgent(None))
        assert invoke(config_file, "daily").exit_code == 1


class TestConfigErrors:
    def test_bad_config_exits(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        result = invoke(path, "list")
        assert result.exit_code == 1
        assert "Configuration error" in result.output
