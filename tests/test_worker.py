"""Tests for the background job queue."""
import asyncio

import httpx
import pytest
from conftest import AVAILABLE_PAGE, CNPJ_A, CNPJ_B, FORM_PAGE, html_response
from test_store import registration_request

from regularize.fetch.rate_limit import RateLimiter
from regularize.jobs.worker import INTERRUPTED_MESSAGE, JobContext, JobQueue
from regularize.parse.models import JobStatus


def portal(request: httpx.Request) -> httpx.Response:
    if request.method == "GET":
        return html_response(FORM_PAGE)
    return html_response(AVAILABLE_PAGE)


def _context(store) -> JobContext:
    return JobContext(
        store=store,
        rate_limiter=RateLimiter(0),
        portal_transport=httpx.MockTransport(portal),
        item_delay=0,
        max_retries=1,
    )


async def test_queued_jobs_run_to_completion(store):
    queue = JobQueue(_context(store), concurrency=2, maxsize=5)
    first = await store.create_job([CNPJ_A, CNPJ_B])
    second = await store.create_job([CNPJ_B])
    queue.enqueue_probe(first)
    queue.enqueue_probe(second)

    await queue.start(recover=False)
    await asyncio.wait_for(queue.join(), timeout=10)
    await queue.stop()

    for job_id, total in ((first, 2), (second, 1)):
        job = await store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == total


async def test_full_queue_refuses(store):
    queue = JobQueue(_context(store), concurrency=1, maxsize=1)
    queue.enqueue_probe("a")
    assert queue.full()
    with pytest.raises(asyncio.QueueFull):
        queue.enqueue_probe("b")


async def test_worker_survives_failed_job(store):
    """A job that raises is logged and the worker moves on."""
    queue = JobQueue(_context(store), concurrency=1, maxsize=5)
    ok = await store.create_job([CNPJ_A])
    queue.enqueue_probe("missing")
    queue.enqueue_probe(ok)

    await queue.start(recover=False)
    await asyncio.wait_for(queue.join(), timeout=10)
    await queue.stop()

    assert (await store.get_job(ok)).status == JobStatus.COMPLETED


async def test_recover_requeues_jobs_and_fails_registrations(store):
    """Unfinished probe jobs are resumed; interrupted registrations are failed."""
    job_id = await store.create_job([CNPJ_A])
    await store.update_job(job_id, status=JobStatus.PROCESSING)
    registration_id = await store.create_registration(registration_request().to_row())
    await store.update_registration(registration_id, status=JobStatus.PROCESSING)

    queue = JobQueue(_context(store), concurrency=1, maxsize=5)
    await queue.start(recover=True)
    await asyncio.wait_for(queue.join(), timeout=10)
    await queue.stop()

    job = await store.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 1
    registration = await store.get_registration(registration_id)
    assert registration.status == JobStatus.FAILED
    assert registration.error_message == INTERRUPTED_MESSAGE
