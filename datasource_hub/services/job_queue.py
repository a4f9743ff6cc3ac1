from __future__ import annotations

import threading
import uuid
from collections import defaultdict, deque
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from datasource_hub.utils.config import load_job_queue_config
from datasource_hub.utils.logging import get_logger, log_event

LOGGER = get_logger(__name__)

CREATE_AUTO_GENERATED_METRICS = "create_auto_generated_metrics"
CREATE_AUTO_GENERATED_FACT_TABLES = "create_auto_generated_fact_tables"

JobHandler = Callable[[Mapping[str, Any]], None]


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    organization_id: str
    payload: Mapping[str, Any]
    status: JobStatus
    triggered_by: str | None
    queue_position: int = 0
    queued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    run_duration_ms: int | None = None


class JobQueue:
    """Background job queue with per-organization concurrency caps.

    Handlers run on a worker pool so callers return as soon as a job is queued.
    Finished jobs are kept in a bounded per-organization history.
    """

    def __init__(self, concurrency: int | None = None, history_limit: int | None = None) -> None:
        config = load_job_queue_config()
        self.concurrency = concurrency or config.concurrency
        self.history_limit = history_limit or config.history_limit
        self._handlers: dict[str, JobHandler] = {}
        self._queues: dict[str, deque[Job]] = defaultdict(deque)
        self._processing: dict[str, dict[str, Job]] = defaultdict(dict)
        self._completed: dict[str, deque[Job]] = defaultdict(lambda: deque(maxlen=self.history_limit))
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="datasource-jobs"
        )

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    def enqueue(
        self,
        name: str,
        organization_id: str,
        payload: Mapping[str, Any],
        *,
        triggered_by: str | None,
    ) -> Job:
        with self._lock:
            job = Job(
                id=str(uuid.uuid4()),
                name=name,
                organization_id=organization_id,
                payload=dict(payload),
                status=JobStatus.QUEUED,
                triggered_by=triggered_by,
                queue_position=len(self._queues[organization_id]),
            )
            self._queues[organization_id].append(job)
            ready = self._claim(organization_id)
        LOGGER.info("Queued %s job %s for organization %s", name, job.id, organization_id)
        self._submit(organization_id, ready)
        return job

    def get_job(self, organization_id: str, job_id: str) -> Job | None:
        for job in self.list_jobs(organization_id):
            if job.id == job_id:
                return job
        return None

    def list_jobs(self, organization_id: str, name: str | None = None) -> list[Job]:
        with self._lock:
            jobs = [
                *self._queues.get(organization_id, ()),
                *self._processing.get(organization_id, {}).values(),
                *self._completed.get(organization_id, ()),
            ]
        return [job for job in jobs if name is None or job.name == name]

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or processing; False when ``timeout`` elapses first."""
        with self._idle:
            return self._idle.wait_for(self._is_idle, timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _is_idle(self) -> bool:
        return not any(self._queues.values()) and not any(self._processing.values())

    def _claim(self, organization_id: str) -> list[Job]:
        """Move queued jobs into processing up to the cap. Caller holds the lock."""
        queue = self._queues[organization_id]
        processing = self._processing[organization_id]
        claimed: list[Job] = []
        while queue and len(processing) < self.concurrency:
            job = queue.popleft()
            started = Job(
                **{
                    **job.__dict__,
                    "status": JobStatus.PROCESSING,
                    "started_at": datetime.now(UTC),
                    "queue_position": 0,
                }
            )
            processing[started.id] = started
            claimed.append(started)
        for position, waiting in enumerate(list(queue)):
            queue[position] = Job(**{**waiting.__dict__, "queue_position": position})
        return claimed

    def _submit(self, organization_id: str, jobs: list[Job]) -> None:
        for job in jobs:
            self._executor.submit(self._run_job, organization_id, job)

    def _run_job(self, organization_id: str, job: Job) -> None:
        handler = self._handlers.get(job.name)
        failure: str | None = None
        if handler is None:
            failure = f"No handler registered for {job.name}"
            LOGGER.error(failure)
        else:
            try:
                handler(job.payload)
            except Exception as exc:  # noqa: BLE001 - failures are recorded on the job
                failure = str(exc) or exc.__class__.__name__
                LOGGER.exception("Job %s (%s) failed", job.id, job.name)

        now = datetime.now(UTC)
        duration_ms = int((now - (job.started_at or now)).total_seconds() * 1000)
        finished = Job(
            **{
                **job.__dict__,
                "status": JobStatus.FAILED if failure else JobStatus.COMPLETED,
                "completed_at": now,
                "run_duration_ms": duration_ms,
                "failure_reason": failure,
            }
        )
        with self._lock:
            self._completed[organization_id].append(finished)
            self._processing[organization_id].pop(finished.id, None)
            ready = self._claim(organization_id)
            self._idle.notify_all()
        log_event(
            LOGGER,
            "job.finished",
            job_id=finished.id,
            job_name=finished.name,
            organization_id=organization_id,
            status=finished.status.value,
            duration_ms=duration_ms,
        )
        self._submit(organization_id, ready)
