"""Tests for QueueDriver - queue entry lifecycle, stale reclaim and the daemon loop."""

from __future__ import annotations

import asyncio
import json
import logging
import os

import pytest

from nodeflow.core.models import QueueEntry, RunStatus
from nodeflow.core.state import load_runs_index
from nodeflow.core.utils import now_ms
from nodeflow.core.worker import QueueDriver


@pytest.fixture
def driver(make_executor, store) -> QueueDriver:
    return QueueDriver(make_executor(), store, stale_after=60, poll_interval=0.05)


@pytest.fixture
def simple_workflow(workflow_builder) -> str:
    wf = workflow_builder("simple")
    return wf.code("double", "return (input or 0) * 2").save()


def _write_entry(driver: QueueDriver, run_id: str, status: str, age_ms: int = 0) -> None:
    entry = QueueEntry(
        workflow_id="simple",
        run_id=run_id,
        status=status,
        timestamp=now_ms() - age_ms,
        input=4,
    )
    (driver.queue_dir / f"{run_id}.json").write_text(entry.model_dump_json(by_alias=True))


# =============================================================================
# Enqueue
# =============================================================================


class TestEnqueue:
    """Tests for QueueDriver.enqueue."""

    def test_enqueue_writes_pending_entry(self, driver):
        """A queue file named by run id holds a pending camelCase entry."""
        run_id = driver.enqueue("simple", {"x": 1})

        raw = json.loads((driver.queue_dir / f"{run_id}.json").read_text())
        assert raw["workflowId"] == "simple"
        assert raw["runId"] == run_id
        assert raw["status"] == "pending"
        assert raw["input"] == {"x": 1}
        assert isinstance(raw["timestamp"], int)

    def test_run_ids_unique(self, driver):
        """Each enqueue gets a fresh run id."""
        ids = {driver.enqueue("simple") for _ in range(5)}
        assert len(ids) == 5
        assert all(i.startswith("run-") for i in ids)


# =============================================================================
# Processing
# =============================================================================


class TestProcessQueueFile:
    """Tests for QueueDriver.process_queue_file."""

    def test_pending_entry_executed_and_removed(self, driver, simple_workflow, store):
        """A pending entry runs to completion and its file is deleted."""
        run_id = driver.enqueue(simple_workflow, 21)
        path = driver.queue_dir / f"{run_id}.json"

        assert asyncio.run(driver.process_queue_file(path)) is True

        assert not path.exists()
        run = store.load_run("simple", run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.output == 42
        assert not driver.is_in_flight(run_id)

    def test_definition_error_still_consumes_entry(self, driver, store):
        """Runs of broken workflows are recorded as failed and dequeued."""
        run_id = driver.enqueue("does-not-exist")
        path = driver.queue_dir / f"{run_id}.json"

        assert asyncio.run(driver.process_queue_file(path)) is True

        assert not path.exists()
        assert store.load_run("does-not-exist", run_id).status == RunStatus.FAILED

    def test_fresh_processing_entry_skipped(self, driver, simple_workflow):
        """An entry another worker is processing is left alone."""
        _write_entry(driver, "run-busy", "processing", age_ms=1000)
        path = driver.queue_dir / "run-busy.json"

        assert asyncio.run(driver.process_queue_file(path)) is False
        assert path.exists()

    def test_stale_processing_entry_reclaimed(self, driver, simple_workflow, store):
        """An entry stuck in processing past the window is run again."""
        _write_entry(driver, "run-stuck", "processing", age_ms=120_000)
        path = driver.queue_dir / "run-stuck.json"

        assert asyncio.run(driver.process_queue_file(path)) is True

        assert not path.exists()
        assert store.load_run("simple", "run-stuck").output == 8

    def test_in_flight_run_not_claimed_twice(self, driver, simple_workflow):
        """A run already executing in this process is never claimed again."""
        run_id = driver.enqueue(simple_workflow)
        driver._in_flight.add(run_id)

        assert asyncio.run(driver.process_queue_file(driver.queue_dir / f"{run_id}.json")) is False
        assert (driver.queue_dir / f"{run_id}.json").exists()

    def test_corrupt_entry_left_in_place(self, driver, caplog):
        """Unreadable entries are logged and kept for inspection."""
        path = driver.queue_dir / "run-bad.json"
        path.write_text("{ not json")

        with caplog.at_level(logging.ERROR):
            assert asyncio.run(driver.process_queue_file(path)) is False

        assert path.exists()
        assert "Unreadable queue entry run-bad.json" in caplog.text

    def test_undecodable_entry_left_in_place(self, driver, caplog):
        """An entry with invalid UTF-8 bytes is logged, not raised."""
        path = driver.queue_dir / "run-binary.json"
        path.write_bytes(b"\xff\xfe")

        with caplog.at_level(logging.ERROR):
            assert asyncio.run(driver.process_queue_file(path)) is False

        assert path.exists()
        assert "Unreadable queue entry run-binary.json" in caplog.text

    def test_unreadable_entry_reported_once_until_rewritten(self, driver, caplog):
        """A corrupt entry is logged once; a rewrite makes it eligible again."""
        path = driver.queue_dir / "run-bad.json"
        path.write_text("{ not json")

        def unreadable_logs() -> int:
            return sum("Unreadable queue entry" in r.getMessage() for r in caplog.records)

        with caplog.at_level(logging.ERROR):
            asyncio.run(driver.process_queue_file(path))
            asyncio.run(driver.process_queue_file(path))
            assert unreadable_logs() == 1

            path.write_text("{ still not json }")
            st = path.stat()
            os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
            asyncio.run(driver.process_queue_file(path))
            assert unreadable_logs() == 2

    def test_repaired_entry_is_processed(self, driver, simple_workflow, store):
        """Once a corrupt entry is fixed in place it runs normally."""
        path = driver.queue_dir / "run-fixed.json"
        path.write_text("{ not json")
        assert asyncio.run(driver.process_queue_file(path)) is False

        _write_entry(driver, "run-fixed", "pending")
        st = path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))

        assert asyncio.run(driver.process_queue_file(path)) is True
        assert store.load_run("simple", "run-fixed").output == 8

    def test_non_json_files_ignored(self, driver):
        """Temp files and other names are not queue entries."""
        path = driver.queue_dir / "run-1.json.tmp"
        path.write_text("{}")

        assert asyncio.run(driver.process_queue_file(path)) is False

    def test_crash_leaves_entry_processing(self, driver, simple_workflow, mocker, caplog):
        """An unexpected executor crash leaves the entry for stale reclaim."""
        mocker.patch.object(
            driver.executor, "execute_workflow", side_effect=RuntimeError("disk on fire")
        )
        run_id = driver.enqueue(simple_workflow)
        path = driver.queue_dir / f"{run_id}.json"

        assert asyncio.run(driver.process_queue_file(path)) is False

        raw = json.loads(path.read_text())
        assert raw["status"] == "processing"
        assert "disk on fire" in caplog.text
        assert not driver.is_in_flight(run_id)


# =============================================================================
# Scanning and Reclaim
# =============================================================================


class TestScanAndReclaim:
    """Tests for scan_queue and reclaim_stale."""

    def test_scan_processes_all_pending(self, driver, simple_workflow, store):
        """scan_queue runs every pending entry."""
        ids = [driver.enqueue(simple_workflow, i) for i in range(3)]

        assert asyncio.run(driver.scan_queue()) == 3

        assert list(driver.queue_dir.glob("*.json")) == []
        assert sorted(store.load_run("simple", i).output for i in ids) == [0, 2, 4]
        assert load_runs_index(store.index_path).workflows["simple"].status == RunStatus.COMPLETED

    def test_scan_respects_concurrency_limit(self, make_executor, store, simple_workflow):
        """No more than max_concurrent_runs execute at once."""
        executor = make_executor()
        driver = QueueDriver(executor, store, max_concurrent_runs=2)
        active = 0
        peak = 0

        async def fake_execute(entry):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1
            return await original(entry)

        original = executor.execute_workflow
        executor.execute_workflow = fake_execute
        for i in range(5):
            driver.enqueue(simple_workflow, i)

        assert asyncio.run(driver.scan_queue()) == 5
        assert peak == 2

    def test_scan_survives_undecodable_entry(self, driver, simple_workflow, store):
        """A binary queue file does not stop valid entries in the same scan."""
        (driver.queue_dir / "bad.json").write_bytes(b"\xff\xfe")
        run_id = driver.enqueue(simple_workflow, 3)

        assert asyncio.run(driver.scan_queue()) == 1

        assert store.load_run("simple", run_id).output == 6
        assert (driver.queue_dir / "bad.json").exists()

    def test_scan_missing_queue_dir(self, make_executor, tmp_path):
        """Scanning a vault without a queue directory is a no-op."""
        from nodeflow.core.state import RunStore

        driver = QueueDriver(make_executor(), RunStore(tmp_path / "empty"))
        assert asyncio.run(driver.scan_queue()) == 0

    def test_reclaim_stale_resets_to_pending(self, driver):
        """Only stale processing entries are reset."""
        _write_entry(driver, "run-stale", "processing", age_ms=120_000)
        _write_entry(driver, "run-fresh", "processing", age_ms=1_000)
        _write_entry(driver, "run-pending", "pending")

        assert driver.reclaim_stale() == 1

        statuses = {
            p.stem: json.loads(p.read_text())["status"] for p in driver.queue_dir.glob("*.json")
        }
        assert statuses == {
            "run-stale": "pending",
            "run-fresh": "processing",
            "run-pending": "pending",
        }


# =============================================================================
# Daemon
# =============================================================================


class TestDaemon:
    """Tests for start_daemon / stop."""

    def test_daemon_processes_queue_until_stopped(self, driver, simple_workflow, store):
        """The daemon picks up entries written while it runs."""

        async def scenario():
            task = asyncio.create_task(driver.start_daemon())
            run_id = driver.enqueue(simple_workflow, 5)
            path = driver.queue_dir / f"{run_id}.json"
            for _ in range(400):
                if not path.exists():
                    break
                await asyncio.sleep(0.05)
            driver.stop()
            await asyncio.wait_for(task, timeout=30)
            return run_id

        run_id = asyncio.run(scenario())

        assert driver.running is False
        assert store.load_run("simple", run_id).output == 10

    def test_daemon_reclaims_stale_on_start(self, driver, simple_workflow, store):
        """Stale entries from a crashed worker are finished at startup."""
        _write_entry(driver, "run-crashed", "processing", age_ms=120_000)

        async def scenario():
            task = asyncio.create_task(driver.start_daemon())
            path = driver.queue_dir / "run-crashed.json"
            for _ in range(400):
                if not path.exists():
                    break
                await asyncio.sleep(0.05)
            driver.stop()
            await asyncio.wait_for(task, timeout=30)

        asyncio.run(scenario())

        assert store.load_run("simple", "run-crashed").status == RunStatus.COMPLETED

    def test_daemon_skips_known_unreadable_entries(self, driver, caplog):
        """Corrupt entries are not re-dispatched on every poll."""
        path = driver.queue_dir / "run-bad.json"
        path.write_text("{ not json")

        async def scenario():
            task = asyncio.create_task(driver.start_daemon())
            await asyncio.sleep(0.5)
            driver.stop()
            await asyncio.wait_for(task, timeout=30)

        with caplog.at_level(logging.ERROR):
            asyncio.run(scenario())

        assert path.exists()
        assert sum("Unreadable queue entry" in r.getMessage() for r in caplog.records) == 1

    def test_daemon_logs_failed_tasks(self, driver, simple_workflow, mocker, caplog):
        """An exception escaping a queue task is logged by the daemon."""
        mocker.patch.object(driver, "process_queue_file", side_effect=OSError("queue gone"))
        driver.enqueue(simple_workflow)

        async def scenario():
            task = asyncio.create_task(driver.start_daemon())
            await asyncio.sleep(0.3)
            driver.stop()
            await asyncio.wait_for(task, timeout=30)

        with caplog.at_level(logging.ERROR):
            asyncio.run(scenario())

        assert "failed: queue gone" in caplog.text


# =============================================================================
# Enqueue-only Drivers
# =============================================================================


class TestEnqueueOnly:
    """Tests for a QueueDriver built without an executor."""

    def test_enqueue_without_executor(self, store):
        driver = QueueDriver(None, store)

        run_id = driver.enqueue("simple", {"n": 1})

        entry = QueueEntry.model_validate_json(
            (store.queue_dir / f"{run_id}.json").read_text()
        )
        assert entry.workflow_id == "simple"
        assert entry.status == "pending"

    def test_processing_requires_executor(self, store):
        driver = QueueDriver(None, store)
        run_id = driver.enqueue("simple")

        with pytest.raises(RuntimeError, match="without an executor"):
            asyncio.run(driver.process_queue_file(store.queue_dir / f"{run_id}.json"))
