"""HTTP client for the Regularize portal with retries and manual redirects."""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from regularize.auth.session import PortalSession
from regularize.config import config
from regularize.errors import PortalTransportError
from regularize.fetch.endpoints import cadastro_url
from regularize.fetch.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
DEFAULT_RETRY_AFTER = 30.0


def _retry_after(response: httpx.Response) -> float:
    """Seconds from a Retry-After header; HTTP-date values fall back to the default."""
    try:
        return max(float(response.headers.get("retry-after", "")), 0.0)
    except ValueError:
        return DEFAULT_RETRY_AFTER


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


@dataclass
class PortalResponse:
    """Raw portal answer; redirects are data, never followed."""

    status_code: int
    headers: httpx.Headers
    body: str
    final_url: str
    submitted_url: str

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("location")

    @classmethod
    def from_httpx(cls, response: httpx.Response, submitted_url: str) -> "PortalResponse":
        return cls(
            status_code=response.status_code,
            headers=response.headers,
            body=response.text,
            final_url=str(response.url),
            submitted_url=submitted_url,
        )


class PortalClient:
    """HTTP client with rate limiting, retries and per-item session handling."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_wait_max: float = 30,
    ):
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=timeout if timeout is not None else config.PORTAL_TIMEOUT,
            follow_redirects=False,  # the redirect target is the classification signal
            limits=limits,
            transport=transport,
            headers={"User-Agent": config.USER_AGENT},
        )
        self.rate_limiter = rate_limiter or RateLimiter(config.RATE_PER_DOMAIN)
        self.max_retries = max_retries if max_retries is not None else config.MAX_RETRIES
        self.retry_wait_max = retry_wait_max
        self.retry_count = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        cnpj: Optional[str],
        session: Optional[PortalSession] = None,
        data: Optional[dict] = None,
        referer: Optional[str] = None,
    ) -> httpx.Response:
        """Send one request with bounded retries; wrap every failure with context."""
        headers = {}
        if session is not None:
            cookie = session.cookie_header()
            if cookie:
                headers["Cookie"] = cookie
        if referer:
            headers["Referer"] = referer

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(self.max_retries, 1)),
                wait=wait_exponential(multiplier=1, min=2, max=self.retry_wait_max),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, _RetryableStatus)),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self.retry_count += 1
                        logger.warning(f"Retrying {method} {url} (attempt {attempt.retry_state.attempt_number})")
                    await self.rate_limiter.acquire(url)
                    response = await self.client.request(method, url, headers=headers, data=data)
                    # Cookies travel only through PortalSession; the shared jar would carry them to the next item
                    self.client.cookies.clear()
                    if response.status_code == 429:
                        self.rate_limiter.penalize(url, _retry_after(response))
                    if response.status_code in RETRYABLE_STATUS:
                        raise _RetryableStatus(response)
        except _RetryableStatus as e:
            raise PortalTransportError(cnpj, url, f"HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise PortalTransportError(cnpj, url, f"timeout after {self.client.timeout.read}s") from e
        except httpx.HTTPError as e:
            raise PortalTransportError(cnpj, url, f"{type(e).__name__}: {e}") from e

        if not (200 <= response.status_code < 400):
            raise PortalTransportError(cnpj, url, f"HTTP {response.status_code}", response.status_code)

        if session is not None:
            session.absorb(response)
        return response

    async def load_page(self, url: str | None = None, cnpj: Optional[str] = None) -> PortalSession:
        """GET a form page and capture its cookies, hidden fields and CAPTCHA site key."""
        url = url or cadastro_url()
        response = await self._request("GET", url, cnpj)
        session = PortalSession.from_response(response, page_url=url)
        logger.debug(
            f"Loaded {url}: status={response.status_code} cookies={len(session.cookies.jar)} "
            f"hidden={list(session.hidden_fields)} site_key={session.site_key}"
        )
        return session

    async def submit(
        self,
        cnpj: str,
        extra_fields: Optional[dict] = None,
        session: Optional[PortalSession] = None,
        url: str | None = None,
    ) -> PortalResponse:
        """POST the CNPJ probe form. 3xx is returned as-is."""
        url = url or (session.page_url if session else cadastro_url())
        fields = dict(session.hidden_fields) if session else {}
        fields["cpfCnpj"] = cnpj
        if extra_fields:
            fields.update(extra_fields)
        response = await self._request("POST", url, cnpj, session=session, data=fields, referer=url)
        return PortalResponse.from_httpx(response, submitted_url=url)

    async def post_form(
        self,
        url: str,
        fields: dict,
        session: PortalSession,
        cnpj: Optional[str] = None,
    ) -> PortalResponse:
        """POST an arbitrary form within an existing session."""
        data = dict(session.hidden_fields)
        data.update(fields)
        response = await self._request("POST", url, cnpj, session=session, data=data, referer=session.page_url)
        return PortalResponse.from_httpx(response, submitted_url=url)

    async def get(self, url: str, session: PortalSession, cnpj: Optional[str] = None) -> PortalResponse:
        response = await self._request("GET", url, cnpj, session=session, referer=session.page_url)
        return PortalResponse.from_httpx(response, submitted_url=url)
