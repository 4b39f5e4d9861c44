"""Queue driver for workflow runs.

Each queued run is one JSON file in ``.nodeflow/workflow-queue/``. The driver
claims pending entries, runs them through the executor and removes the
entry once the run record is written. Entries left ``processing`` by a
crashed process are reset to ``pending`` after a staleness window.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import pydantic

from nodeflow.core.graph_engine import WorkflowExecutor
from nodeflow.core.models import QueueEntry
from nodeflow.core.state import RunStore
from nodeflow.core.utils import atomic_write_text, new_run_id, now_ms

logger = logging.getLogger(__name__)


class QueueDriver:
    """
    Consumes queue entries for one vault.

    Design:
    - One asyncio task per run; a run id is claimed at most once at a time
    - Different runs may execute concurrently, up to max_concurrent_runs
    - Stale ``processing`` entries are reclaimed, never silently dropped
    """

    def __init__(
        self,
        executor: WorkflowExecutor | None,
        store: RunStore,
        stale_after: float = 300.0,
        poll_interval: float = 2.0,
        max_concurrent_runs: int = 4,
    ):
        self.executor = executor
        self.store = store
        self.stale_after_ms = int(stale_after * 1000)
        self.poll_interval = poll_interval
        self.max_concurrent_runs = max_concurrent_runs
        self.running = False
        self._semaphore = asyncio.Semaphore(max_concurrent_runs)
        # Run ids currently executing in this process
        self._in_flight: set[str] = set()
        # Daemon tasks keyed by queue file name
        self._tasks: dict[str, asyncio.Task] = {}
        # Queue files already reported unreadable, by name, with their mtime
        self._unreadable: dict[str, int] = {}

    @property
    def queue_dir(self) -> Path:
        return self.store.queue_dir

    def is_in_flight(self, run_id: str) -> bool:
        return run_id in self._in_flight

    # ========== Queue Files ==========

    def enqueue(self, workflow_id: str, input_data: Any = None) -> str:
        """Write a pending entry and return its run id."""
        entry = QueueEntry(workflow_id=workflow_id, run_id=new_run_id(), input=input_data)
        self._write_entry(self.queue_dir / f"{entry.run_id}.json", entry)
        logger.info(f"Queued run {entry.run_id} for workflow {workflow_id}")
        return entry.run_id

    def _write_entry(self, path: Path, entry: QueueEntry) -> None:
        atomic_write_text(path, entry.model_dump_json(by_alias=True, indent=2))

    def _read_entry(self, path: Path) -> QueueEntry | None:
        try:
            mtime = path.stat().st_mtime_ns
        except FileNotFoundError:
            return None
        if self._unreadable.get(path.name) == mtime:
            return None

        try:
            entry = QueueEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, pydantic.ValidationError) as e:
            # Left in place for manual inspection; reported again only once rewritten
            logger.error(f"Unreadable queue entry {path.name}: {e}")
            self._unreadable[path.name] = mtime
            return None

        self._unreadable.pop(path.name, None)
        return entry

    def _is_known_unreadable(self, path: Path) -> bool:
        if path.name not in self._unreadable:
            return False
        try:
            return self._unreadable[path.name] == path.stat().st_mtime_ns
        except FileNotFoundError:
            self._unreadable.pop(path.name, None)
            return True

    def _is_stale(self, entry: QueueEntry) -> bool:
        return now_ms() - entry.timestamp > self.stale_after_ms

    # ========== Processing ==========

    async def process_queue_file(self, path: Path) -> bool:
        """
        Process one queue file.

        Returns True if a run was executed.
        """
        if self.executor is None:
            raise RuntimeError("QueueDriver was built without an executor; it can only enqueue")
        path = Path(path)
        if path.suffix != ".json":
            return False

        entry = self._read_entry(path)
        if entry is None:
            return False

        if entry.status == "processing" and not self.is_in_flight(entry.run_id):
            if not self._is_stale(entry):
                return False
            logger.warning(f"Reclaiming stale run {entry.run_id} of {entry.workflow_id}")
            entry.status = "pending"
            entry.timestamp = now_ms()
            self._write_entry(path, entry)

        if entry.status != "pending" or self.is_in_flight(entry.run_id):
            return False

        # Claim: no await between the check above and this insert
        self._in_flight.add(entry.run_id)
        try:
            entry.status = "processing"
            entry.timestamp = now_ms()
            self._write_entry(path, entry)

            run = await self.executor.execute_workflow(entry)
            path.unlink(missing_ok=True)
            logger.info(f"Run {run.id} finished with status {run.status.value}")
            return True
        except Exception as e:
            # Entry stays 'processing' and is reclaimed once stale
            logger.error(f"Run {entry.run_id} of {entry.workflow_id} crashed: {e}")
            return False
        finally:
            self._in_flight.discard(entry.run_id)

    def reclaim_stale(self) -> int:
        """Reset stale ``processing`` entries to ``pending``. Run at startup."""
        reclaimed = 0
        for path in sorted(self.queue_dir.glob("*.json")):
            entry = self._read_entry(path)
            if entry is None or entry.status != "processing":
                continue
            if self.is_in_flight(entry.run_id) or not self._is_stale(entry):
                continue
            logger.warning(f"Reclaiming stale run {entry.run_id} of {entry.workflow_id}")
            entry.status = "pending"
            entry.timestamp = now_ms()
            self._write_entry(path, entry)
            reclaimed += 1
        return reclaimed

    async def _process_bounded(self, path: Path) -> bool:
        async with self._semaphore:
            return await self.process_queue_file(path)

    async def scan_queue(self) -> int:
        """Process every queue entry, at most ``max_concurrent_runs`` at a time.

        Returns the number of runs executed.
        """
        if not self.queue_dir.is_dir():
            return 0

        paths = sorted(self.queue_dir.glob("*.json"))
        results = await asyncio.gather(*(self._process_bounded(p) for p in paths))
        return sum(1 for r in results if r)

    def _dispatch(self) -> None:
        """Start a task for every queue file that has none yet."""
        for path in sorted(self.queue_dir.glob("*.json")):
            if path.name in self._tasks or self._is_known_unreadable(path):
                continue
            task = asyncio.create_task(self._process_bounded(path))
            self._tasks[path.name] = task
            task.add_done_callback(lambda t, name=path.name: self._task_done(name, t))

    def _task_done(self, name: str, task: asyncio.Task) -> None:
        self._tasks.pop(name, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Queue task for {name} failed: {task.exception()}")

    async def start_daemon(self):
        """
        Start daemon mode - reclaim stale entries, then poll the queue.
        Long runs do not hold up newly queued ones.
        """
        self.running = True
        self.store.ensure_dirs()
        self.reclaim_stale()

        while self.running:
            try:
                self._dispatch()
            except Exception as e:
                logger.error(f"Worker error: {e}")

            await asyncio.sleep(self.poll_interval)

        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def stop(self):
        """Stop the worker daemon"""
        self.running = False
