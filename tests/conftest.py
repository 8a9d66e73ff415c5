"""Shared fixtures: portal pages, a stub CAPTCHA solver and a throwaway store."""
from urllib.parse import parse_qs

import httpx
import pytest

from regularize.errors import CaptchaSolveError
from regularize.fetch.client import PortalClient
from regularize.fetch.rate_limit import RateLimiter
from regularize.store.state import SQLiteJobStore

CNPJ_A = "12345678000190"
CNPJ_B = "98765432000110"

FORM_PAGE = """
<html><body>
<form action="/cadastro" method="post">
  <input type="hidden" name="_csrf" value="csrf-123">
  <label>CPF ou CNPJ</label><input name="cpfCnpj">
  <button type="submit">Continuar</button>
</form>
</body></html>
"""

CHALLENGE_PAGE = """
<html><body>
<form action="/cadastro" method="post">
  <input type="hidden" name="_csrf" value="csrf-456">
  <input name="cpfCnpj">
  <div class="h-captcha" data-sitekey="site-key-abc"></div>
</form>
<script src="https://hcaptcha.com/1/api.js" async defer></script>
</body></html>
"""

AVAILABLE_PAGE = """
<html><body>
<h2>Dados do responsável</h2>
<form>
  <label>CPF do responsável</label><input name="cpf">
  <label>Nome da mãe</label><input name="nomeMae">
  <label>Data de nascimento</label><input name="dataNascimento">
</form>
</body></html>
"""

REGISTERED_PAGE = """
<html><body><div class="alert">O CNPJ informado já está cadastrado. Faça seu login.</div></body></html>
"""


def form_data(request: httpx.Request) -> dict[str, str]:
    """Decode an urlencoded request body into a flat dict."""
    parsed = parse_qs(request.content.decode("utf-8"), keep_blank_values=True)
    return {key: values[-1] for key, values in parsed.items()}


def html_response(body: str, status_code: int = 200, **kwargs) -> httpx.Response:
    headers = {"content-type": "text/html; charset=utf-8", **kwargs.pop("headers", {})}
    return httpx.Response(status_code, headers=headers, text=body, **kwargs)


class StubSolver:
    """Stands in for CaptchaSolver: records calls, returns a token or raises."""

    def __init__(self, token: str = "solved-token", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls: list[tuple[str, str, str]] = []
        self.solved_count = 0
        self.failed_count = 0

    async def solve(self, site_key: str, page_url: str, kind: str = "hcaptcha") -> str:
        self.calls.append((site_key, page_url, kind))
        if self.error is not None:
            self.failed_count += 1
            raise self.error
        self.solved_count += 1
        return self.token

    async def aclose(self) -> None:
        pass


class RecordingSleep:
    """Replacement for asyncio.sleep that returns at once and keeps the delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_client(handler, max_retries: int = 1) -> PortalClient:
    return PortalClient(
        rate_limiter=RateLimiter(0),
        transport=httpx.MockTransport(handler),
        max_retries=max_retries,
    )


@pytest.fixture
async def store(tmp_path):
    db = SQLiteJobStore(tmp_path / "state.db")
    await db.initialize()
    return db


@pytest.fixture
def failing_solver():
    return StubSolver(error=CaptchaSolveError("createTask error: ERROR_ZERO_BALANCE"))
