from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from typing import Any

import pytest

from datasource_hub.services.job_queue import (
    CREATE_AUTO_GENERATED_METRICS,
    JobQueue,
    JobStatus,
)


@pytest.fixture
def make_queue() -> Iterator[Any]:
    queues: list[JobQueue] = []

    def _make(**kwargs: Any) -> JobQueue:
        queue = JobQueue(**kwargs)
        queues.append(queue)
        return queue

    yield _make
    for queue in queues:
        queue.shutdown(wait=True)


def test_enqueued_job_runs_registered_handler(make_queue: Any) -> None:
    seen: list[Mapping[str, Any]] = []
    queue = make_queue(concurrency=1)
    queue.register(CREATE_AUTO_GENERATED_METRICS, seen.append)

    job = queue.enqueue(CREATE_AUTO_GENERATED_METRICS, "org_1", {"datasourceId": "ds_1"}, triggered_by="admin-1")

    assert job.status is JobStatus.QUEUED
    assert queue.wait_for_idle(timeout=5)
    assert seen == [{"datasourceId": "ds_1"}]
    finished = queue.get_job("org_1", job.id)
    assert finished is not None
    assert finished.status is JobStatus.COMPLETED
    assert finished.triggered_by == "admin-1"
    assert finished.completed_at is not None


def test_enqueue_returns_while_handler_is_still_running(make_queue: Any) -> None:
    started = threading.Event()
    release = threading.Event()
    handler_threads: list[str] = []

    def _blocking(payload: Mapping[str, Any]) -> None:
        handler_threads.append(threading.current_thread().name)
        started.set()
        release.wait(timeout=5)

    queue = make_queue(concurrency=1)
    queue.register("slow", _blocking)

    job = queue.enqueue("slow", "org_1", {}, triggered_by=None)

    assert started.wait(timeout=5)
    running = queue.get_job("org_1", job.id)
    assert running is not None
    assert running.status is JobStatus.PROCESSING
    assert handler_threads != [threading.current_thread().name]

    release.set()
    assert queue.wait_for_idle(timeout=5)
    finished = queue.get_job("org_1", job.id)
    assert finished is not None
    assert finished.status is JobStatus.COMPLETED


def test_concurrency_cap_holds_back_later_jobs(make_queue: Any) -> None:
    release = threading.Event()
    ran: list[int] = []

    def _handler(payload: Mapping[str, Any]) -> None:
        ran.append(payload["n"])
        release.wait(timeout=5)

    queue = make_queue(concurrency=1)
    queue.register("ordered", _handler)

    first = queue.enqueue("ordered", "org_1", {"n": 1}, triggered_by=None)
    second = queue.enqueue("ordered", "org_1", {"n": 2}, triggered_by=None)

    waiting = queue.get_job("org_1", second.id)
    assert waiting is not None
    assert waiting.status is JobStatus.QUEUED
    assert waiting.queue_position == 0

    release.set()
    assert queue.wait_for_idle(timeout=5)
    assert ran == [1, 2]
    assert {job.id: job.status for job in queue.list_jobs("org_1")} == {
        first.id: JobStatus.COMPLETED,
        second.id: JobStatus.COMPLETED,
    }


def test_handler_failure_is_recorded_on_job(make_queue: Any) -> None:
    def _boom(payload: Mapping[str, Any]) -> None:
        raise ValueError("warehouse unreachable")

    queue = make_queue(concurrency=2)
    queue.register("explode", _boom)

    job = queue.enqueue("explode", "org_1", {}, triggered_by=None)

    assert queue.wait_for_idle(timeout=5)
    finished = queue.get_job("org_1", job.id)
    assert finished is not None
    assert finished.status is JobStatus.FAILED
    assert finished.failure_reason == "warehouse unreachable"


def test_unknown_job_name_fails_without_raising(make_queue: Any) -> None:
    queue = make_queue(concurrency=1)
    job = queue.enqueue("missing", "org_1", {}, triggered_by=None)

    assert queue.wait_for_idle(timeout=5)
    finished = queue.get_job("org_1", job.id)
    assert finished is not None
    assert finished.failure_reason == "No handler registered for missing"


def test_jobs_are_scoped_per_organization(make_queue: Any) -> None:
    queue = make_queue(concurrency=1)
    queue.register(CREATE_AUTO_GENERATED_METRICS, lambda payload: None)
    queue.enqueue(CREATE_AUTO_GENERATED_METRICS, "org_1", {}, triggered_by=None)
    queue.enqueue(CREATE_AUTO_GENERATED_METRICS, "org_1", {}, triggered_by=None)
    other = queue.enqueue(CREATE_AUTO_GENERATED_METRICS, "org_2", {}, triggered_by=None)
    assert queue.wait_for_idle(timeout=5)

    assert len(queue.list_jobs("org_1", CREATE_AUTO_GENERATED_METRICS)) == 2
    assert [job.id for job in queue.list_jobs("org_2")] == [other.id]
    assert queue.get_job("org_1", other.id) is None


def test_finished_history_is_bounded(make_queue: Any) -> None:
    queue = make_queue(concurrency=1, history_limit=3)
    queue.register(CREATE_AUTO_GENERATED_METRICS, lambda payload: None)

    jobs = [
        queue.enqueue(CREATE_AUTO_GENERATED_METRICS, "org_1", {"n": n}, triggered_by=None)
        for n in range(5)
    ]
    assert queue.wait_for_idle(timeout=5)

    assert [job.id for job in queue.list_jobs("org_1")] == [job.id for job in jobs[-3:]]
