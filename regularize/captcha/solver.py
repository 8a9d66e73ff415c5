"""
CAPTCHA solving through a task-queue vendor API (createTask / getTaskResult).

The vendor is treated as a black box: submit a task, then poll its result at
a fixed interval until it is ready, errors out, or the poll ceiling is hit.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from regularize.config import config
from regularize.errors import CaptchaError, CaptchaSolveError, CaptchaTimeoutError

logger = logging.getLogger(__name__)

TASK_TYPES = {
    "hcaptcha": "HCaptchaTaskProxyless",
    "recaptcha": "ReCaptchaV2TaskProxyless",
}


@dataclass
class CaptchaResult:
    """Solved task, kept for logging and cost tracking."""

    token: str
    task_id: str
    polls: int
    solve_time_seconds: float


class CaptchaSolver:
    """Client for a createTask/getTaskResult CAPTCHA vendor."""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else config.CAPTCHA_API_KEY
        self.api_url = (api_url or config.CAPTCHA_API_URL).rstrip("/")
        self.poll_interval = poll_interval if poll_interval is not None else config.CAPTCHA_POLL_INTERVAL
        self.max_attempts = max_attempts if max_attempts is not None else config.CAPTCHA_MAX_ATTEMPTS
        self.client = httpx.AsyncClient(timeout=30, transport=transport)
        self._sleep = sleep
        self.solved_count = 0
        self.failed_count = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict) -> dict:
        response = await self.client.post(f"{self.api_url}/{path}", json=payload)
        response.raise_for_status()
        return response.json()

    async def create_task(self, site_key: str, page_url: str, kind: str = "hcaptcha") -> str:
        """Submit a task descriptor; returns the vendor task id."""
        if not self.api_key:
            raise CaptchaSolveError("CAPTCHA API key not configured")
        task_type = TASK_TYPES.get(kind, TASK_TYPES["hcaptcha"])
        try:
            result = await self._post(
                "createTask",
                {
                    "clientKey": self.api_key,
                    "task": {
                        "type": task_type,
                        "websiteURL": page_url,
                        "websiteKey": site_key,
                    },
                },
            )
        except httpx.HTTPError as e:
            raise CaptchaSolveError(f"createTask request failed: {e}") from e

        if result.get("errorId", 0) != 0:
            raise CaptchaSolveError(
                f"createTask error: {result.get('errorCode') or ''} {result.get('errorDescription') or ''}".strip()
            )
        task_id = result.get("taskId")
        if not task_id:
            raise CaptchaSolveError("createTask returned no taskId")
        return str(task_id)

    async def get_task_result(self, task_id: str) -> dict:
        """One poll of the task status."""
        try:
            result = await self._post("getTaskResult", {"clientKey": self.api_key, "taskId": task_id})
        except httpx.HTTPError as e:
            raise CaptchaSolveError(f"getTaskResult request failed: {e}") from e
        if result.get("errorId", 0) != 0:
            raise CaptchaSolveError(
                f"getTaskResult error: {result.get('errorCode') or ''} {result.get('errorDescription') or ''}".strip()
            )
        return result

    async def solve_task(self, site_key: str, page_url: str, kind: str = "hcaptcha") -> CaptchaResult:
        """Create a task and poll it until ready, vendor error or the attempt ceiling."""
        start_time = time.monotonic()
        task_id = await self.create_task(site_key, page_url, kind)
        logger.info(f"CAPTCHA task {task_id} created ({kind})")

        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.poll_interval)
            result = await self.get_task_result(task_id)
            status = result.get("status")

            if status == "ready":
                solution = result.get("solution") or {}
                token = solution.get("gRecaptchaResponse") or solution.get("token")
                if not token:
                    raise CaptchaSolveError(f"Task {task_id} ready without a token")
                elapsed = time.monotonic() - start_time
                logger.info(f"CAPTCHA task {task_id} solved after {attempt} polls ({elapsed:.1f}s)")
                return CaptchaResult(token=token, task_id=task_id, polls=attempt, solve_time_seconds=elapsed)

            if status not in ("processing", "idle", None):
                raise CaptchaSolveError(f"Task {task_id} reported status {status!r}")

            logger.debug(f"CAPTCHA task {task_id} poll {attempt}: {status}")

        raise CaptchaTimeoutError(task_id, self.max_attempts)

    async def solve(self, site_key: str, page_url: str, kind: str = "hcaptcha") -> str:
        """Solve a challenge and return the token."""
        try:
            result = await self.solve_task(site_key, page_url, kind)
        except CaptchaError:
            self.failed_count += 1
            raise
        self.solved_count += 1
        return result.token
