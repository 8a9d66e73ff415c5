"""Bounded worker pool running probe jobs and registrations in the background."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from regularize.captcha.solver import CaptchaSolver
from regularize.config import config
from regularize.fetch.client import PortalClient
from regularize.fetch.rate_limit import RateLimiter
from regularize.jobs.otp import OtpMailbox
from regularize.jobs.probe import ProbeRunner
from regularize.jobs.registration import RegistrationRunner
from regularize.parse.models import JobStatus, RegistrationRequest, utcnow
from regularize.store.base import JobStore
from regularize.store.evidence import EvidenceStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processo interrompido antes da conclusão; reenvie o cadastro"


@dataclass
class JobContext:
    """Everything a job needs, constructed once and handed to every runner."""

    store: JobStore
    solver: Optional[CaptchaSolver] = None
    mailbox: OtpMailbox = field(default_factory=OtpMailbox)
    evidence: EvidenceStore = field(default_factory=EvidenceStore)
    rate_limiter: RateLimiter = field(default_factory=lambda: RateLimiter(config.RATE_PER_DOMAIN))
    portal_transport: Optional[httpx.AsyncBaseTransport] = None
    item_delay: Optional[float] = None
    max_retries: Optional[int] = None

    def make_client(self) -> PortalClient:
        """Fresh portal client per job; cookies are carried per item by PortalSession."""
        return PortalClient(
            rate_limiter=self.rate_limiter,
            transport=self.portal_transport,
            max_retries=self.max_retries,
        )

    async def run_probe(self, job_id: str) -> None:
        async with self.make_client() as client:
            runner = ProbeRunner(self.store, client, self.solver, item_delay=self.item_delay)
            await runner.run(job_id)

    async def run_registration(self, registration_id: str, request: RegistrationRequest) -> None:
        async with self.make_client() as client:
            runner = RegistrationRunner(self.store, client, self.solver, self.mailbox, self.evidence)
            await runner.run(registration_id, request)


class JobQueue:
    """
    Fixed number of workers pulling jobs off a bounded queue.

    Each job runs on a single worker; separate jobs run concurrently. A full
    queue is refused at enqueue time instead of piling up work.
    """

    def __init__(self, context: JobContext, concurrency: int | None = None, maxsize: int | None = None):
        self.context = context
        self.concurrency = concurrency or config.WORKER_CONCURRENCY
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize if maxsize is not None else config.QUEUE_MAXSIZE)
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def full(self) -> bool:
        return self._queue.full()

    async def start(self, recover: bool = True) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"job-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} job workers")
        if recover:
            await self.recover()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Job workers stopped")

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    def enqueue_probe(self, job_id: str) -> None:
        """Raises asyncio.QueueFull when the queue is at capacity."""
        self._queue.put_nowait(("probe", job_id, None))
        logger.debug(f"Queued probe job {job_id} ({self._queue.qsize()} waiting)")

    def enqueue_registration(self, registration_id: str, request: RegistrationRequest) -> None:
        """Raises asyncio.QueueFull when the queue is at capacity."""
        self._queue.put_nowait(("registration", registration_id, request))
        logger.debug(f"Queued registration {registration_id} ({self._queue.qsize()} waiting)")

    async def recover(self) -> None:
        """
        Pick up work left unfinished by a previous process.

        Probe jobs resume after their last recorded outcome. Registrations
        cannot resume because their secrets were never persisted, so they are
        marked failed.
        """
        store = self.context.store
        for job in await store.list_unfinished_jobs():
            logger.info(f"Recovering probe job {job.id} ({job.progress}/{job.total})")
            await self._queue.put(("probe", job.id, None))
        for registration in await store.list_unfinished_registrations():
            logger.warning(f"Registration {registration.id} was interrupted, marking as failed")
            await store.update_registration(
                registration.id,
                status=JobStatus.FAILED,
                error_message=INTERRUPTED_MESSAGE,
                tempo_fim=utcnow(),
            )

    async def _worker(self, n: int) -> None:
        while True:
            kind, job_id, payload = await self._queue.get()
            try:
                if kind == "probe":
                    await self.context.run_probe(job_id)
                else:
                    await self.context.run_registration(job_id, payload)
            except Exception as e:
                # The runner already recorded the failure on the job row
                logger.error(f"Worker {n}: {kind} {job_id} ended with error: {e}")
            finally:
                self._queue.task_done()
