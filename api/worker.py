"""
Decision Core — Worker Backends

Pluggable backends for workflow runs:
  - InlineBackend: synchronous in-process (dev/testing)
  - ThreadPoolBackend: ThreadPoolExecutor in-process, bounded concurrency

The active backend is selected by the CC_WORKER_MODE env var or the
`worker.mode` config key:
  inline    → InlineBackend
  thread    → ThreadPoolBackend (default)

Runs are keyed by request_id. The coordinator checkpoints every
transition, so a run lost with the process is picked up by recover().
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from api.models import JobStatus

logger = logging.getLogger("decision_core.worker")


# ═══════════════════════════════════════════════════════════════════
# Job Tracking
# ═══════════════════════════════════════════════════════════════════

@dataclass
class JobRecord:
    """In-memory record for tracking job lifecycle."""
    job_id: str
    request_id: str
    status: str = JobStatus.QUEUED.value
    enqueued_at: float = 0.0
    started_at: float = 0.0
    completed_at: float = 0.0
    error: str = ""


class JobTracker:
    """Thread-safe in-memory job status tracker."""

    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, request_id: str) -> JobRecord:
        record = JobRecord(
            job_id=f"job_{uuid.uuid4().hex[:12]}",
            request_id=request_id,
            enqueued_at=time.time(),
        )
        with self._lock:
            self._jobs[record.job_id] = record
        return record

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_by_request(self, request_id: str) -> JobRecord | None:
        with self._lock:
            for j in self._jobs.values():
                if j.request_id == request_id:
                    return j
        return None

    def _update(self, job_id: str, **fields):
        with self._lock:
            record = self._jobs.get(job_id)
            if record is not None:
                for k, v in fields.items():
                    setattr(record, k, v)

    def mark_running(self, job_id: str):
        self._update(job_id, status=JobStatus.RUNNING.value, started_at=time.time())

    def mark_completed(self, job_id: str):
        self._update(job_id, status=JobStatus.COMPLETED.value, completed_at=time.time())

    def mark_failed(self, job_id: str, error: str):
        self._update(job_id, status=JobStatus.FAILED.value, completed_at=time.time(), error=error[:500])

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in JobStatus}
            for j in self._jobs.values():
                counts[j.status] = counts.get(j.status, 0) + 1
            return counts


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    """Abstract interface for run dispatch."""

    def __init__(self, coordinator: Any):
        self.coordinator = coordinator
        self.tracker = JobTracker()

    def enqueue(self, request_id: str) -> str:
        """Schedule coordinator.run(request_id). Returns job_id."""
        raise NotImplementedError

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.tracker.get(job_id)

    def _execute(self, job_id: str, request_id: str):
        self.tracker.mark_running(job_id)
        try:
            state = self.coordinator.run(request_id)
        except Exception as e:
            # The workflow stays at its last checkpoint for recover()
            self.tracker.mark_failed(job_id, f"{type(e).__name__}: {e}")
            logger.error("Job %s failed for %s: %s", job_id, request_id, e)
            return
        self.tracker.mark_completed(job_id)
        logger.info("Job %s finished %s as %s", job_id, request_id, state.status.value)

    def shutdown(self):
        """Graceful shutdown."""
        pass


# ═══════════════════════════════════════════════════════════════════
# Inline Backend (synchronous, dev/test)
# ═══════════════════════════════════════════════════════════════════

class InlineBackend(WorkerBackend):
    """Synchronous in-process execution. Blocks until the run pauses or ends."""

    def enqueue(self, request_id: str) -> str:
        record = self.tracker.create(request_id)
        self._execute(record.job_id, request_id)
        return record.job_id


# ═══════════════════════════════════════════════════════════════════
# Thread Pool Backend
# ═══════════════════════════════════════════════════════════════════

class ThreadPoolBackend(WorkerBackend):
    """
    Async execution via ThreadPoolExecutor.
    Bounded concurrency. The coordinator runs synchronously in worker threads.
    """

    def __init__(self, coordinator: Any, max_workers: int = 4):
        super().__init__(coordinator)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="dc_worker",
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        logger.info("ThreadPoolBackend started: max_workers=%d", max_workers)

    def enqueue(self, request_id: str) -> str:
        record = self.tracker.create(request_id)
        future = self._pool.submit(self._execute, record.job_id, request_id)
        with self._lock:
            self._futures[record.job_id] = future
        logger.info("Enqueued job %s for %s", record.job_id, request_id)
        return record.job_id

    def wait(self, job_id: str, timeout: float | None = None) -> None:
        """Block until a job finishes. Used by tests and the CLI."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self):
        logger.info("Shutting down ThreadPoolBackend...")
        self._pool.shutdown(wait=True, cancel_futures=False)


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(
    coordinator: Any,
    mode: str | None = None,
    max_workers: int | None = None,
) -> WorkerBackend:
    """
    Create the worker backend for a coordinator.

    Mode selection: explicit mode, then CC_WORKER_MODE, then
    coordinator.config["worker"]["mode"], then "thread".
    """
    worker_cfg = (getattr(coordinator, "config", None) or {}).get("worker") or {}
    mode = mode or os.environ.get("CC_WORKER_MODE") or worker_cfg.get("mode", "thread")
    max_workers = max_workers or int(worker_cfg.get("max_workers", 4))

    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend(coordinator)
    if mode == "thread":
        logger.info("Worker backend: ThreadPoolBackend (max_workers=%d)", max_workers)
        return ThreadPoolBackend(coordinator, max_workers=max_workers)
    raise ValueError(f"Unknown worker mode: {mode}")
