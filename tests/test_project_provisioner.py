"""
Unit Tests for the Project Provisioner
"""

import sys

import pytest
import yaml

from idea_pipeline.project_provisioner import (
    ProjectProvisioner,
    ProvisioningError,
    is_usable_design,
    render_design_markdown,
    sanitize_identifier,
    write_design_document,
)
from idea_pipeline.task_model import Task, TaskStatus

from tests.conftest import DESIGN


class TestSanitizeIdentifier:
    """Identifiers are reduced to [a-z0-9_]."""

    @pytest.mark.parametrize("raw, expected", [
        ("habit_tracker", "habit_tracker"),
        ("Habit Tracker", "habit_tracker"),
        ("  --Receipt--Splitter!!  ", "receipt_splitter"),
        ("2048 clone", "app_2048_clone"),
        ("../../etc/passwd", "etc_passwd"),
        ("カメラ app", "app"),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_identifier(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "___", "日本語"])
    def test_fallback(self, raw):
        result = sanitize_identifier(raw)
        assert result.startswith("app_")
        assert result[4:].isdigit()


class TestProvision:
    """Test directory provisioning."""

    @pytest.mark.asyncio
    async def test_without_command_creates_directory(self, tmp_path):
        provisioner = ProjectProvisioner(tmp_path / "projects")
        path = await provisioner.provision("My App")
        assert path == tmp_path / "projects" / "my_app"
        assert path.is_dir()

    @pytest.mark.asyncio
    async def test_runs_scaffold_command(self, tmp_path):
        command = [sys.executable, "-c", "import os, sys; os.makedirs(sys.argv[2]); open(os.path.join(sys.argv[2], sys.argv[1] + '.txt'), 'w').close()", "{name}", "{path}"]
        provisioner = ProjectProvisioner(tmp_path, command=command)
        path = await provisioner.provision("demo")
        assert (path / "demo.txt").exists()

    @pytest.mark.asyncio
    async def test_existing_directory_is_not_reprovisioned(self, tmp_path):
        (tmp_path / "demo").mkdir()
        provisioner = ProjectProvisioner(tmp_path, command=["definitely-not-flutter"])
        assert await provisioner.provision("demo") == tmp_path / "demo"

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        provisioner = ProjectProvisioner(tmp_path, command=["definitely-not-flutter", "{path}"])
        with pytest.raises(ProvisioningError):
            await provisioner.provision("demo")

    @pytest.mark.asyncio
    async def test_failing_command(self, tmp_path):
        provisioner = ProjectProvisioner(tmp_path, command=[sys.executable, "-c", "import sys; sys.exit(1)"])
        with pytest.raises(ProvisioningError):
            await provisioner.provision("demo")

    @pytest.mark.asyncio
    async def test_command_that_creates_nothing(self, tmp_path):
        provisioner = ProjectProvisioner(tmp_path, command=[sys.executable, "-c", "pass"])
        with pytest.raises(ProvisioningError):
            await provisioner.provision("demo")


class TestRemove:
    """Test project removal."""

    def test_remove(self, tmp_path):
        (tmp_path / "demo" / "lib").mkdir(parents=True)
        provisioner = ProjectProvisioner(tmp_path)
        assert provisioner.remove("demo") is True
        assert not (tmp_path / "demo").exists()

    def test_remove_missing_is_success(self, tmp_path):
        assert ProjectProvisioner(tmp_path).remove("nothing") is True

    def test_remove_cannot_escape_projects_dir(self, tmp_path):
        projects = tmp_path / "projects"
        outside = tmp_path / "keep"
        outside.mkdir()
        ProjectProvisioner(projects).remove("../keep")
        assert outside.exists()


class TestDesignDocument:
    """Test design document rendering."""

    def test_usable_design(self):
        assert is_usable_design(DESIGN)
        assert is_usable_design({"features": ["one"]})
        assert not is_usable_design({"summary": "  "})
        assert not is_usable_design(None)
        assert not is_usable_design({"screens": []})

    def test_markdown_sections(self):
        task = Task(id="t1", status=TaskStatus.APPROVED, title="Splitter", target="Friends")
        markdown = render_design_markdown(task, DESIGN)
        assert markdown.startswith("# Splitter")
        assert "## Features" in markdown
        assert "### Scanner" in markdown
        assert "- `id: String`" in markdown
        assert "1. Scanner" in markdown
        assert "**Target:** Friends" in markdown

    def test_write_files(self, tmp_path):
        task = Task(id="t1", status=TaskStatus.APPROVED, title="Splitter")
        path = write_design_document(tmp_path, task, DESIGN)
        assert path == tmp_path / "docs" / "DESIGN.md"
        data = yaml.safe_load((tmp_path / "docs" / "design.yaml").read_text(encoding="utf-8"))
        assert data["features"] == DESIGN["features"]
        assert data["title"] == "Splitter"
