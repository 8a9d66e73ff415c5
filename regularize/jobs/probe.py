"""Probe pipeline: does each CNPJ of a batch already have a Regularize account?"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from regularize.captcha.solver import CaptchaSolver
from regularize.config import config
from regularize.errors import (
    CaptchaSolveError,
    CaptchaTimeoutError,
    PortalTransportError,
    StoreError,
)
from regularize.fetch.client import PortalClient
from regularize.jobs.metrics import Metrics
from regularize.parse.classifier import Classification, ResponseClassifier
from regularize.parse.cnpj import format_cnpj
from regularize.parse.models import (
    ClassificationMethod,
    JobRecord,
    JobStatus,
    OutcomeStatus,
    ProbeOutcome,
)
from regularize.parse.redact import redact_string
from regularize.store.base import JobStore

logger = logging.getLogger(__name__)

MSG_REGISTERED = "CNPJ já possui cadastro na Regularize"
MSG_AVAILABLE = "CNPJ não possui cadastro na Regularize"


def captcha_fields(token: str) -> dict[str, str]:
    """Form fields the portal reads the solved token from."""
    return {"h-captcha-response": token, "g-recaptcha-response": token}


def _error_outcome(cnpj: str, method: ClassificationMethod, reason: str, final_url: Optional[str] = None) -> ProbeOutcome:
    reason = redact_string(reason)
    return ProbeOutcome(
        cnpj=cnpj,
        classification=None,
        status=OutcomeStatus.ERROR,
        message=f"Erro ao consultar: {reason}",
        final_url=final_url,
        method=method,
        evidence=reason[:200],
    )


def _success_outcome(cnpj: str, result: Classification) -> ProbeOutcome:
    return ProbeOutcome(
        cnpj=cnpj,
        classification=bool(result.registered),
        status=OutcomeStatus.SUCCESS,
        message=MSG_REGISTERED if result.registered else MSG_AVAILABLE,
        final_url=result.final_url,
        method=result.method,
        evidence=result.evidence,
    )


class ProbeRunner:
    """Runs one probe job: items strictly in order, one outcome persisted per item."""

    def __init__(
        self,
        store: JobStore,
        client: PortalClient,
        solver: Optional[CaptchaSolver] = None,
        classifier: Optional[ResponseClassifier] = None,
        item_delay: Optional[float] = None,
        max_challenge_rounds: Optional[int] = None,
        presolve_captcha: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.client = client
        self.solver = solver
        self.classifier = classifier or ResponseClassifier()
        self.item_delay = config.ITEM_DELAY if item_delay is None else item_delay
        self.max_challenge_rounds = (
            config.MAX_CHALLENGE_ROUNDS if max_challenge_rounds is None else max_challenge_rounds
        )
        self.presolve_captcha = config.PRESOLVE_CAPTCHA if presolve_captcha is None else presolve_captcha
        self._sleep = sleep

    async def _solve(self, site_key: Optional[str], page_url: str, kind: str) -> str:
        if self.solver is None:
            raise CaptchaSolveError("CAPTCHA solver not configured")
        if not site_key:
            raise CaptchaSolveError("CAPTCHA site key not found in page")
        return await self.solver.solve(site_key, page_url, kind)

    async def probe(self, cnpj: str) -> ProbeOutcome:
        """
        Classify one CNPJ.

        Never raises: transport, CAPTCHA and parsing failures become an
        outcome with status ``error`` and a method tag naming the failure.
        """
        display = format_cnpj(cnpj)
        last_url: Optional[str] = None
        try:
            session = await self.client.load_page(cnpj=cnpj)
            last_url = session.page_url
            extra: dict[str, str] = {}

            if self.presolve_captcha and session.challenge is not None:
                token = await self._solve(session.site_key, session.page_url, session.challenge.kind)
                extra = captcha_fields(token)

            rounds = 0
            while True:
                response = await self.client.submit(cnpj, extra, session)
                last_url = response.final_url
                result = self.classifier.classify_response(response)
                logger.debug(
                    f"{display}: status={response.status_code} method={result.method.value} "
                    f"evidence={result.evidence!r}"
                )
                if not result.is_challenge:
                    return _success_outcome(cnpj, result)

                if rounds >= self.max_challenge_rounds:
                    return _error_outcome(
                        cnpj,
                        ClassificationMethod.CHALLENGE_UNRESOLVED,
                        f"CAPTCHA persistiu após {rounds} resolução(ões)",
                        result.final_url,
                    )
                rounds += 1
                site_key = result.challenge.site_key or session.site_key
                logger.info(f"{display}: CAPTCHA challenge (round {rounds}), solving...")
                token = await self._solve(site_key, session.page_url, result.challenge.kind)
                extra = captcha_fields(token)

        except PortalTransportError as e:
            logger.warning(f"{display}: transport error: {e}")
            return _error_outcome(cnpj, ClassificationMethod.TRANSPORT_ERROR, e.reason, e.url)
        except CaptchaTimeoutError as e:
            logger.warning(f"{display}: CAPTCHA timeout: {e}")
            return _error_outcome(cnpj, ClassificationMethod.CAPTCHA_TIMEOUT, str(e), last_url)
        except CaptchaSolveError as e:
            logger.warning(f"{display}: CAPTCHA failed: {e}")
            return _error_outcome(cnpj, ClassificationMethod.CAPTCHA_FAILED, str(e), last_url)
        except Exception as e:
            logger.error(f"{display}: unexpected error during probe: {e}", exc_info=True)
            return _error_outcome(cnpj, ClassificationMethod.ERROR, str(e), last_url)

    def _portal_counters(self) -> dict[str, int]:
        """Running totals kept by the client and the shared solver."""
        counters = {"retries": self.client.retry_count}
        if self.solver is not None:
            counters["captcha_solved"] = self.solver.solved_count
            counters["captcha_failed"] = self.solver.failed_count
        return counters

    async def run(self, job_id: str) -> JobRecord:
        """
        Drive a job to a terminal state.

        Resumes after the last persisted outcome when the job was already
        processing (process restart). Anything escaping the item loop marks
        the job failed and is re-raised.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise StoreError(f"Job {job_id} not found")
        if job.status.is_terminal:
            logger.info(f"Job {job_id} already {job.status.value}, nothing to do")
            return job

        results = list(job.results)
        metrics = Metrics(job.total, job_id)
        counters_before = self._portal_counters()
        try:
            if job.status == JobStatus.PENDING:
                await self.store.update_job(job_id, status=JobStatus.PROCESSING)
            else:
                logger.info(f"Resuming job {job_id} at item {len(results) + 1}/{job.total}")

            logger.info(f"Job {job_id}: probing {job.total - len(results)} CNPJs")
            for cnpj in job.cnpjs[len(results):]:
                outcome = await self.probe(cnpj)
                results.append(outcome)
                metrics.record(outcome)
                await self.store.update_job(job_id, progress=len(results), results=results)

                logger.info(
                    f"CNPJ {format_cnpj(cnpj)}: "
                    f"{'ERRO' if outcome.status == OutcomeStatus.ERROR else ('JÁ CADASTRADO' if outcome.classification else 'DISPONÍVEL')}"
                    f" ({outcome.method.value})"
                )
                if len(results) % 10 == 0:
                    metrics.report()

                # Portal rate limiting blocks the whole batch without this
                await self._sleep(self.item_delay)

            for key, value in self._portal_counters().items():
                metrics.increment(key, value - counters_before[key])
            await self.store.update_job(job_id, status=JobStatus.COMPLETED)
            logger.info(f"Job {job_id} completed: {metrics.get_summary()}")
        except Exception as e:
            error_msg = redact_string(str(e)) or type(e).__name__
            logger.error(f"Job {job_id} failed: {error_msg}", exc_info=True)
            try:
                await self.store.update_job(job_id, status=JobStatus.FAILED, error_message=error_msg[:500])
            except Exception as write_error:
                logger.error(f"Could not mark job {job_id} as failed: {write_error}")
            raise

        job.status = JobStatus.COMPLETED
        job.progress = len(results)
        job.results = results
        return job
