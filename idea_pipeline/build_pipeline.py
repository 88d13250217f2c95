"""
Build/Deploy Pipeline

Long-running, asynchronous continuation of Start Development:

1. Code generation and build steps (configurable commands, run in order
   inside the project directory)
2. Preview server for the built output
3. Public tunnel; the first https URL it prints becomes the review URL

Its only contract with the orchestrator is the final store write:
- success: reviewUrl + status=review
- failure or cancellation: status=designed (the human can restart
  development)

The final write is conditional on the task still being in dev_ready. A task
that was rejected, or otherwise moved, while its pipeline ran keeps its new
state.

The pipeline never touches isProcessing; the task was already released in
dev_ready before the pipeline started.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional, Dict, List, Set

from .notification_engine import NotificationEngine, NotificationTemplates
from .task_model import TaskStatus
from .task_store import TaskStore, TaskStoreError

logger = logging.getLogger("build_pipeline")

TUNNEL_URL_PATTERN = re.compile(r"https://[-a-z0-9]+\.trycloudflare\.com")
STOP_TIMEOUT = 5.0


class PipelineStepError(Exception):
    """A pipeline step failed, timed out or could not be started."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


def _substitute(command: List[str], **values) -> List[str]:
    argv = []
    for part in command:
        for key, value in values.items():
            part = part.replace("{" + key + "}", str(value))
        argv.append(part)
    return argv


class BuildPipeline:
    """Runs build pipelines as background asyncio tasks."""

    def __init__(self, store: TaskStore, config, notifier: Optional[NotificationEngine] = None):
        self._store = store
        self._config = config
        self._notifier = notifier
        self._running: Dict[str, asyncio.Task] = {}
        self._services: Dict[str, List[asyncio.subprocess.Process]] = {}
        self._ports: Dict[str, int] = {}
        self._drains: Set[asyncio.Task] = set()

    @property
    def active(self) -> List[str]:
        return [task_id for task_id, task in self._running.items() if not task.done()]

    def start(self, task_id: str, project_dir: Path) -> asyncio.Task:
        """Schedule the pipeline for task_id and return its asyncio.Task."""
        existing = self._running.get(task_id)
        if existing is not None and not existing.done():
            logger.warning(f"Pipeline already running for {task_id}; not starting another")
            return existing

        task = asyncio.get_running_loop().create_task(
            self.run(task_id, Path(project_dir)), name=f"pipeline-{task_id}"
        )
        self._running[task_id] = task
        task.add_done_callback(lambda done: self._forget_run(task_id, done))
        return task

    def _forget_run(self, task_id: str, done: asyncio.Task) -> None:
        if self._running.get(task_id) is done:
            del self._running[task_id]

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel the running pipeline of task_id and wait for it to unwind.

        Returns True if a pipeline was running.
        """
        task = self._running.get(task_id)
        if task is None or task.done():
            return False
        logger.info(f"Cancelling pipeline for {task_id}")
        task.cancel()
        await asyncio.wait({task})
        return True

    async def run(self, task_id: str, project_dir: Path) -> Optional[str]:
        """Run every step; returns the review URL, or None on failure."""
        logger.info(f"Pipeline started for {task_id} in {project_dir}")
        try:
            for index, step in enumerate(self._config.build_steps, start=1):
                await self._run_step(f"step {index}", step, project_dir)
            review_url = await self._start_services(task_id, project_dir)
        except asyncio.CancelledError:
            logger.warning(f"Pipeline cancelled for {task_id}")
            await self._stop_services(task_id)
            await self._finish(task_id, {"status": TaskStatus.DESIGNED}, notify=False)
            raise
        except Exception as e:
            logger.error(f"Pipeline failed for {task_id}: {e}")
            await self._stop_services(task_id)
            await self._finish(task_id, {"status": TaskStatus.DESIGNED}, error=str(e))
            return None

        logger.info(f"Pipeline finished for {task_id}: {review_url}")
        await self._finish(task_id, {"reviewUrl": review_url, "status": TaskStatus.REVIEW})
        return review_url

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _run_step(self, name: str, command: List[str], project_dir: Path) -> None:
        if not command:
            return
        argv = _substitute(command, path=project_dir, name=project_dir.name)
        logger.info(f"[{project_dir.name}] {name}: {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(project_dir),
            )
        except OSError as e:
            raise PipelineStepError(name, f"cannot run {argv[0]}: {e}") from e

        timeout = self._config.build_timeout
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise PipelineStepError(name, f"timed out after {timeout}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip()
            raise PipelineStepError(name, f"exit code {process.returncode}: {error[:500]}")

    def _allocate_port(self, task_id: str) -> int:
        if task_id in self._ports:
            return self._ports[task_id]
        used = set(self._ports.values())
        port = self._config.preview_port
        while port in used:
            port += 1
        self._ports[task_id] = port
        return port

    async def _spawn(
        self,
        task_id: str,
        name: str,
        argv: List[str],
        cwd: Path,
        capture: bool = False,
    ) -> asyncio.subprocess.Process:
        output = asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=output,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd),
            )
        except OSError as e:
            raise PipelineStepError(name, f"cannot run {argv[0]}: {e}") from e
        self._services.setdefault(task_id, []).append(process)
        return process

    async def _start_services(self, task_id: str, project_dir: Path) -> str:
        """Start the preview server and the tunnel; returns the review URL."""
        await self._stop_services(task_id)
        port = self._allocate_port(task_id)

        if self._config.preview_command:
            argv = _substitute(self._config.preview_command, port=port, path=project_dir)
            await self._spawn(task_id, "preview", argv, project_dir)
            logger.info(f"[{project_dir.name}] preview server on port {port}")

        if not self._config.tunnel_command:
            return f"http://localhost:{port}"

        argv = _substitute(self._config.tunnel_command, port=port)
        tunnel = await self._spawn(task_id, "tunnel", argv, project_dir, capture=True)
        try:
            url = await asyncio.wait_for(
                self._read_tunnel_url(tunnel), timeout=self._config.tunnel_url_timeout
            )
        except asyncio.TimeoutError:
            raise PipelineStepError(
                "tunnel", f"no public URL within {self._config.tunnel_url_timeout}s"
            )
        # Keep reading so the tunnel never blocks on a full pipe
        drain = asyncio.get_running_loop().create_task(self._drain(tunnel))
        self._drains.add(drain)
        drain.add_done_callback(self._drains.discard)
        return url

    async def _drain(self, process: asyncio.subprocess.Process) -> None:
        while await process.stdout.readline():
            pass

    async def _read_tunnel_url(self, process: asyncio.subprocess.Process) -> str:
        while True:
            line = await process.stdout.readline()
            if not line:
                raise PipelineStepError("tunnel", f"exited with {await process.wait()} before printing a URL")
            match = TUNNEL_URL_PATTERN.search(line.decode("utf-8", errors="replace"))
            if match:
                return match.group(0)

    async def _stop_services(self, task_id: str) -> None:
        for process in self._services.pop(task_id, []):
            if process.returncode is not None:
                continue
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    async def _finish(
        self,
        task_id: str,
        changes: Dict,
        error: Optional[str] = None,
        notify: bool = True,
    ) -> bool:
        """Write the result iff the task is still dev_ready; returns True if written."""
        try:
            written = await self._store.compare_and_set(
                task_id, expected={"status": TaskStatus.DEV_READY}, changes=changes
            )
            task = await self._store.get(task_id) if written else None
        except TaskStoreError as e:
            logger.error(f"Pipeline result for {task_id} could not be stored: {e}")
            return False

        if not written:
            logger.warning(f"Task {task_id} left dev_ready during its pipeline; result discarded")
            await self.stop_preview(task_id)
            return False
        if self._notifier is None or not notify:
            return True
        if error is None:
            self._notifier.notify(
                NotificationTemplates.preview_ready(task_id, task.title, changes["reviewUrl"])
            )
        else:
            self._notifier.notify(NotificationTemplates.build_failed(task_id, task.title, error))
        return True

    async def stop_preview(self, task_id: str) -> None:
        """Stop the preview server and tunnel of one task."""
        await self._stop_services(task_id)
        self._ports.pop(task_id, None)

    async def shutdown(self) -> None:
        """Cancel running pipelines and stop every preview service."""
        pending = [task for task in self._running.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task_id in list(self._services):
            await self._stop_services(task_id)
        self._running.clear()
        logger.info("Build pipeline shut down")
