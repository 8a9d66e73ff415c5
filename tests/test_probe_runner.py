"""Tests for the probe job loop."""
import logging

import httpx
import pytest
from conftest import (
    AVAILABLE_PAGE,
    CHALLENGE_PAGE,
    CNPJ_A,
    CNPJ_B,
    FORM_PAGE,
    REGISTERED_PAGE,
    RecordingSleep,
    StubSolver,
    form_data,
    html_response,
    make_client,
)

from regularize.errors import StoreError
from regularize.jobs.probe import MSG_AVAILABLE, MSG_REGISTERED, ProbeRunner
from regularize.parse.models import ClassificationMethod, JobStatus, OutcomeStatus, ProbeOutcome
from regularize.store.state import SQLiteJobStore


class RecordingStore(SQLiteJobStore):
    """SQLite store that keeps every job update it receives."""

    def __init__(self, db_path, fail_on_results: bool = False):
        super().__init__(db_path)
        self.updates: list[dict] = []
        self.fail_on_results = fail_on_results

    async def update_job(self, job_id, **fields):
        # Snapshot lists: the runner keeps appending to the same results list
        self.updates.append({k: list(v) if isinstance(v, list) else v for k, v in fields.items()})
        if self.fail_on_results and "results" in fields:
            raise StoreError("disk full")
        await super().update_job(job_id, **fields)


class Portal:
    """Portal stub: GET serves the form, POST answers per CNPJ."""

    def __init__(self, answers: dict, page: str = FORM_PAGE):
        self.answers = answers
        self.page = page
        self.posts: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return html_response(self.page)
        fields = form_data(request)
        self.posts.append(fields)
        answer = self.answers[fields["cpfCnpj"]]
        return answer(fields) if callable(answer) else answer


def redirect_to(location: str) -> httpx.Response:
    return httpx.Response(302, headers={"location": location})


@pytest.fixture
async def recording_store(tmp_path):
    db = RecordingStore(tmp_path / "state.db")
    await db.initialize()
    return db


def _runner(store, portal, solver=None, sleep=None, **kwargs):
    return ProbeRunner(
        store,
        make_client(portal),
        solver=solver,
        item_delay=2.0,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


async def test_redirect_to_root_marks_registered(recording_store):
    """302 to the portal root is registered, tagged redirect_analysis."""
    portal = Portal({CNPJ_A: redirect_to("/")})
    job_id = await recording_store.create_job([CNPJ_A])

    job = await _runner(recording_store, portal).run(job_id)

    outcome = job.results[0]
    assert outcome.classification is True
    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.method == ClassificationMethod.REDIRECT
    assert outcome.message == MSG_REGISTERED


async def test_progress_tracks_results_and_pacing(recording_store):
    """Every update writes progress == len(results); one pacing sleep per item."""
    portal = Portal({CNPJ_A: html_response(REGISTERED_PAGE), CNPJ_B: html_response(AVAILABLE_PAGE)})
    job_id = await recording_store.create_job([CNPJ_A, CNPJ_B])
    sleep = RecordingSleep()

    await _runner(recording_store, portal, sleep=sleep).run(job_id)

    item_updates = [u for u in recording_store.updates if "results" in u]
    assert [u["progress"] for u in item_updates] == [1, 2]
    for update in item_updates:
        assert update["progress"] == len(update["results"])
        assert update["progress"] <= 2
    assert sleep.delays == [2.0, 2.0]

    job = await recording_store.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert len(job.results) == job.total == job.progress == 2
    assert [r.classification for r in job.results] == [True, False]
    assert job.results[1].message == MSG_AVAILABLE


async def test_duplicates_are_probed_independently(store):
    portal = Portal({CNPJ_A: html_response(AVAILABLE_PAGE)})
    job_id = await store.create_job([CNPJ_A, CNPJ_A])

    job = await _runner(store, portal).run(job_id)

    assert len(portal.posts) == 2
    assert [r.cnpj for r in job.results] == [CNPJ_A, CNPJ_A]


async def test_challenge_is_solved_and_resubmitted(store):
    """A CAPTCHA answer is solved and the same CNPJ posted again with the token."""

    def answer(fields):
        if fields.get("h-captcha-response") == "solved-token":
            return html_response(AVAILABLE_PAGE)
        return html_response(CHALLENGE_PAGE)

    portal = Portal({CNPJ_A: answer})
    solver = StubSolver()
    job_id = await store.create_job([CNPJ_A])

    job = await _runner(store, portal, solver=solver).run(job_id)

    assert solver.calls[0][0] == "site-key-abc"
    assert len(portal.posts) == 2
    assert portal.posts[1]["g-recaptcha-response"] == "solved-token"
    assert job.results[0].classification is False
    assert job.results[0].status == OutcomeStatus.SUCCESS


async def test_persistent_challenge_is_bounded(store):
    portal = Portal({CNPJ_A: html_response(CHALLENGE_PAGE)})
    solver = StubSolver()
    job_id = await store.create_job([CNPJ_A])

    job = await _runner(store, portal, solver=solver, max_challenge_rounds=2).run(job_id)

    assert len(solver.calls) == 2
    assert len(portal.posts) == 3
    assert job.results[0].status == OutcomeStatus.ERROR
    assert job.results[0].method == ClassificationMethod.CHALLENGE_UNRESOLVED


async def test_captcha_failure_is_item_level(store, failing_solver):
    """A vendor failure on one item does not stop the batch."""
    portal = Portal({CNPJ_A: html_response(CHALLENGE_PAGE), CNPJ_B: redirect_to("/login")})
    job_id = await store.create_job([CNPJ_A, CNPJ_B])

    job = await _runner(store, portal, solver=failing_solver).run(job_id)

    assert job.status == JobStatus.COMPLETED
    first, second = job.results
    assert first.status == OutcomeStatus.ERROR
    assert first.classification is None
    assert first.method == ClassificationMethod.CAPTCHA_FAILED
    assert "ERROR_ZERO_BALANCE" in first.message
    assert second.classification is True


async def test_transport_error_is_item_level(store):
    portal = Portal({CNPJ_A: html_response("erro", status_code=502), CNPJ_B: html_response(AVAILABLE_PAGE)})
    job_id = await store.create_job([CNPJ_A, CNPJ_B])

    job = await _runner(store, portal).run(job_id)

    assert job.results[0].method == ClassificationMethod.TRANSPORT_ERROR
    assert job.results[0].status == OutcomeStatus.ERROR
    assert job.results[1].status == OutcomeStatus.SUCCESS


async def test_store_failure_fails_job(tmp_path):
    """A write failure escapes the loop, marks the job failed and is re-raised."""
    store = RecordingStore(tmp_path / "state.db", fail_on_results=True)
    await store.initialize()
    portal = Portal({CNPJ_A: html_response(AVAILABLE_PAGE)})
    job_id = await store.create_job([CNPJ_A])

    with pytest.raises(StoreError):
        await _runner(store, portal).run(job_id)

    job = await store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "disk full" in job.error_message


async def test_resume_after_restart(store):
    """A job left processing resumes after its last persisted outcome."""
    portal = Portal({CNPJ_A: html_response(REGISTERED_PAGE), CNPJ_B: html_response(AVAILABLE_PAGE)})
    job_id = await store.create_job([CNPJ_A, CNPJ_B])
    done = ProbeOutcome(cnpj=CNPJ_A, classification=True, method=ClassificationMethod.CONTENT)
    await store.update_job(job_id, status=JobStatus.PROCESSING, progress=1, results=[done])

    job = await _runner(store, portal).run(job_id)

    assert [p["cpfCnpj"] for p in portal.posts] == [CNPJ_B]
    assert job.progress == 2
    assert [r.cnpj for r in job.results] == [CNPJ_A, CNPJ_B]


async def test_terminal_job_is_left_alone(store):
    portal = Portal({})
    job_id = await store.create_job([CNPJ_A])
    await store.update_job(job_id, status=JobStatus.COMPLETED)

    job = await _runner(store, portal).run(job_id)

    assert job.status == JobStatus.COMPLETED
    assert portal.posts == []


async def test_missing_job_raises(store):
    with pytest.raises(StoreError):
        await _runner(store, Portal({})).run("missing")


class CookiePortal:
    """Hands out a fresh JSESSIONID on every form load and records the cookies sent."""

    def __init__(self):
        self.loads = 0
        self.get_cookies: list = []
        self.post_cookies: list = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        cookie = request.headers.get("cookie")
        if request.method == "GET":
            self.loads += 1
            self.get_cookies.append(cookie)
            return html_response(FORM_PAGE, headers={"set-cookie": f"JSESSIONID=item{self.loads}; Path=/"})
        self.post_cookies.append(cookie)
        return html_response(AVAILABLE_PAGE)


async def test_each_item_starts_without_cookies(store):
    """The form load of a later item never carries the previous item's session."""
    portal = CookiePortal()
    job_id = await store.create_job([CNPJ_A, CNPJ_B])

    job = await _runner(store, portal).run(job_id)

    assert job.status == JobStatus.COMPLETED
    assert portal.get_cookies == [None, None]
    assert portal.post_cookies == ["JSESSIONID=item1", "JSESSIONID=item2"]


async def test_timeout_is_item_level(store):
    """A read timeout on one item is recorded and the next item still runs."""

    def answer(fields):
        raise httpx.ReadTimeout("portal too slow")

    portal = Portal({CNPJ_A: answer, CNPJ_B: html_response(AVAILABLE_PAGE)})
    job_id = await store.create_job([CNPJ_A, CNPJ_B])

    job = await _runner(store, portal).run(job_id)

    assert job.status == JobStatus.COMPLETED
    first, second = job.results
    assert first.status == OutcomeStatus.ERROR
    assert first.classification is None
    assert first.method == ClassificationMethod.TRANSPORT_ERROR
    assert "timeout" in first.evidence
    assert "timeout" in first.message
    assert second.classification is False


async def test_completion_summary_counts_captcha_and_retries(store, caplog):
    """The completion log carries this job's solver and retry counters."""
    caplog.set_level(logging.INFO, logger="regularize.jobs.probe")

    def answer(fields):
        if fields.get("h-captcha-response") == "solved-token":
            return html_response(AVAILABLE_PAGE)
        return html_response(CHALLENGE_PAGE)

    solver = StubSolver()
    solver.solved_count = 5  # totals from earlier jobs on the shared solver
    portal = Portal({CNPJ_A: answer})
    job_id = await store.create_job([CNPJ_A])

    await _runner(store, portal, solver=solver).run(job_id)

    summary = next(r.getMessage() for r in caplog.records if "completed:" in r.getMessage())
    assert "'captcha_solved': 1" in summary
    assert "'captcha_failed': 0" in summary
    assert "'retries': 0" in summary
