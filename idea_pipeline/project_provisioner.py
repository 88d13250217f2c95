"""
Project Provisioner

Creates, documents and removes the per-task project directory.

Every project lives at projects_dir / <identifier>. The identifier is
sanitized before use so a directory name taken from agent output or a stored
task can never escape projects_dir.
"""

import asyncio
import logging
import re
import shutil
import time
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

from .task_model import Task

logger = logging.getLogger("project_provisioner")

DOCS_DIR = "docs"
DESIGN_MARKDOWN = "DESIGN.md"
DESIGN_YAML = "design.yaml"
DESIGN_SECTIONS = ("summary", "features", "screens", "data_model", "packages", "milestones")


class ProvisioningError(Exception):
    """The scaffold command failed or produced no project directory."""


def sanitize_identifier(raw: Optional[str]) -> str:
    """
    Normalize a proposed project identifier to [a-z0-9_].

    Runs of other characters become a single underscore, leading/trailing
    underscores are stripped, a leading digit gets an "app_" prefix and an
    empty result falls back to app_<unix timestamp>.
    """
    slug = re.sub(r"[^a-z0-9_]", "_", (raw or "").strip().lower())
    slug = re.sub(r"_+", "_", slug).strip("_")
    if not slug:
        return f"app_{int(time.time())}"
    if slug[0].isdigit():
        slug = f"app_{slug}"
    return slug


def is_usable_design(design: Optional[Dict[str, Any]]) -> bool:
    """A design needs at least a summary or a feature list."""
    if not isinstance(design, dict):
        return False
    summary = design.get("summary")
    features = design.get("features")
    return bool((isinstance(summary, str) and summary.strip()) or (isinstance(features, list) and features))


def render_design_markdown(task: Task, design: Dict[str, Any]) -> str:
    """Render the structured design as the markdown handed to the coding agent."""
    lines = [f"# {task.title or 'Untitled'}", ""]
    if task.overview:
        lines += [f"> {task.overview}", ""]

    summary = design.get("summary")
    if summary:
        lines += ["## Summary", "", str(summary).strip(), ""]

    features = design.get("features") or []
    if features:
        lines += ["## Features", ""]
        lines += [f"- {feature}" for feature in features]
        lines.append("")

    screens = design.get("screens") or []
    if screens:
        lines += ["## Screens", ""]
        for screen in screens:
            if isinstance(screen, dict):
                lines.append(f"### {screen.get('name', 'Screen')}")
                lines += ["", str(screen.get("description", "")).strip(), ""]
            else:
                lines.append(f"- {screen}")
        lines.append("")

    entities = design.get("data_model") or []
    if entities:
        lines += ["## Data Model", ""]
        for entity in entities:
            if isinstance(entity, dict):
                lines.append(f"### {entity.get('name', 'Entity')}")
                lines.append("")
                lines += [f"- `{f}`" for f in entity.get("fields") or []]
                lines.append("")
            else:
                lines.append(f"- {entity}")
        lines.append("")

    packages = design.get("packages") or []
    if packages:
        lines += ["## Packages", ""]
        lines += [f"- {package}" for package in packages]
        lines.append("")

    milestones = design.get("milestones") or []
    if milestones:
        lines += ["## Milestones", ""]
        lines += [f"{i}. {step}" for i, step in enumerate(milestones, start=1)]
        lines.append("")

    lines += [
        "## Product",
        "",
        f"- **Target:** {task.target}",
        f"- **Monetization:** {task.monetization}",
        f"- **Type:** {task.type}",
        f"- **Difficulty:** {task.difficulty}",
        "",
    ]
    return "\n".join(lines)


def write_design_document(project_dir: Path, task: Task, design: Dict[str, Any]) -> Path:
    """Write docs/DESIGN.md and docs/design.yaml; returns the markdown path."""
    docs = Path(project_dir) / DOCS_DIR
    docs.mkdir(parents=True, exist_ok=True)

    markdown_path = docs / DESIGN_MARKDOWN
    markdown_path.write_text(render_design_markdown(task, design), encoding="utf-8")

    structured = {key: design.get(key) for key in DESIGN_SECTIONS if design.get(key)}
    structured["task_id"] = task.id
    structured["title"] = task.title
    (docs / DESIGN_YAML).write_text(
        yaml.safe_dump(structured, allow_unicode=True, sort_keys=False),
        encoding="utf-8",
    )
    logger.info(f"Design document written: {markdown_path}")
    return markdown_path


class ProjectProvisioner:
    """Scaffolds project directories under projects_dir."""

    def __init__(self, projects_dir: Path, command: Optional[List[str]] = None, timeout: float = 600.0):
        self.projects_dir = Path(projects_dir)
        self.command = list(command or [])
        self.timeout = timeout

    def path_for(self, identifier: str) -> Path:
        """Predictable project path for an identifier."""
        return self.projects_dir / sanitize_identifier(identifier)

    def exists(self, identifier: str) -> bool:
        return self.path_for(identifier).is_dir()

    async def provision(self, identifier: str) -> Path:
        """
        Create the project directory. Idempotent: an existing directory is
        returned untouched.

        Raises:
            ProvisioningError: The scaffold command is missing, failed, timed
                out or did not create the directory.
        """
        project_dir = self.path_for(identifier)
        if project_dir.is_dir():
            logger.info(f"Project directory already exists, skipping scaffold: {project_dir}")
            return project_dir

        self.projects_dir.mkdir(parents=True, exist_ok=True)
        if not self.command:
            project_dir.mkdir(parents=True)
            logger.info(f"Created empty project directory: {project_dir}")
            return project_dir

        argv = [
            part.replace("{name}", project_dir.name).replace("{path}", str(project_dir))
            for part in self.command
        ]
        logger.info(f"Provisioning {project_dir.name}: {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.projects_dir),
            )
        except OSError as e:
            raise ProvisioningError(f"Cannot run {argv[0]}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProvisioningError(f"Scaffold command timed out after {self.timeout}s")

        if process.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip()
            raise ProvisioningError(f"Scaffold exited with {process.returncode}: {error[:500]}")
        if not project_dir.is_dir():
            raise ProvisioningError(f"Scaffold finished but {project_dir} was not created")

        logger.info(f"Project provisioned: {project_dir}")
        return project_dir

    def remove(self, identifier: str) -> bool:
        """
        Delete the project tree. Best-effort: errors are logged.

        Returns True if the directory is gone afterwards.
        """
        project_dir = self.path_for(identifier)
        if not project_dir.exists():
            return True
        try:
            shutil.rmtree(project_dir)
            logger.info(f"Removed project directory: {project_dir}")
        except OSError as e:
            logger.error(f"Failed to remove {project_dir}: {e}")
        return not project_dir.exists()
