"""FastAPI main application."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from regularize.captcha.solver import CaptchaSolver
from regularize.config import config
from regularize.errors import ValidationError
from regularize.jobs.worker import JobContext, JobQueue
from regularize.parse.cnpj import extract_cnpjs, split_valid
from regularize.parse.models import JobStatus, RegistrationRequest, utcnow
from regularize.store.base import JobStore
from regularize.store.evidence import EvidenceStore
from regularize.store.factory import open_store

logger = logging.getLogger(__name__)

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


class ProbeJobRequest(BaseModel):
    """Request model for a probe job: a list of CNPJs and/or pasted text."""
    cnpjs: list[str] = Field(default_factory=list)
    text: Optional[str] = None


class OtpRequest(BaseModel):
    code: str = Field(min_length=4, max_length=12)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for err in exc.errors():
        msg = str(err.get("msg", "")).removeprefix("Value error, ")
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{field}: {msg}" if field else msg)
    return "; ".join(messages) or "Dados inválidos"


def create_app(
    store: JobStore | None = None,
    context: JobContext | None = None,
    start_workers: bool = True,
) -> FastAPI:
    """
    Build the API around an explicit store and job context.

    Without arguments the store is opened from configuration at startup.
    Tests pass their own store (and a context with a stubbed transport).
    """
    app = FastAPI(title="Regularize Automation API", version="0.1.0")

    @app.on_event("startup")
    async def startup():
        """Open the store and start the workers."""
        if store is not None:
            await store.initialize()
        app.state.store = store or await open_store()
        job_context = context or JobContext(
            store=app.state.store,
            solver=CaptchaSolver() if config.CAPTCHA_API_KEY else None,
            evidence=EvidenceStore(public_url=config.EVIDENCE_PUBLIC_URL),
        )
        if job_context.solver is None:
            logger.warning("CAPTCHA solver not configured, challenged items will fail")
        app.state.queue = JobQueue(job_context)
        if start_workers:
            await app.state.queue.start()

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.queue.stop()
        solver = app.state.queue.context.solver
        if solver is not None:
            await solver.aclose()
        await app.state.store.close()

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return _error(400, _validation_message(exc))

    @app.exception_handler(ValidationError)
    async def domain_validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return _error(500, "Erro interno do servidor")

    @app.get("/health")
    async def health():
        """Health check endpoint (no auth required)."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_connected": await app.state.store.test_connection(),
            "workers_running": app.state.queue.running,
        }

    @app.post("/probe-jobs")
    async def create_probe_job(body: ProbeJobRequest, _: bool = Depends(verify_api_key)):
        """Validate identifiers, create a pending job and queue it."""
        raw = list(body.cnpjs) + extract_cnpjs(body.text)
        valid, rejected = split_valid(raw)
        if not valid:
            raise HTTPException(status_code=400, detail="Nenhum CNPJ válido informado")
        queue: JobQueue = app.state.queue
        if queue.full():
            raise HTTPException(status_code=503, detail="Fila de processamento cheia, tente mais tarde")

        job_id = await app.state.store.create_job(valid)
        try:
            queue.enqueue_probe(job_id)
        except asyncio.QueueFull:
            await app.state.store.update_job(
                job_id, status=JobStatus.FAILED, error_message="Fila de processamento cheia"
            )
            raise HTTPException(status_code=503, detail="Fila de processamento cheia, tente mais tarde")

        if rejected:
            logger.info(f"Job {job_id}: {len(rejected)} invalid identifiers rejected")
        return {"success": True, "jobId": job_id, "total": len(valid), "rejected": rejected}

    @app.get("/probe-jobs/{job_id}")
    async def get_probe_job(job_id: str, _: bool = Depends(verify_api_key)):
        job = await app.state.store.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job não encontrado")
        return {"success": True, "job": job.model_dump(mode="json")}

    @app.post("/registrations")
    async def create_registration(request: RegistrationRequest, _: bool = Depends(verify_api_key)):
        """Persist the registration (digests only) and queue it."""
        queue: JobQueue = app.state.queue
        if queue.full():
            raise HTTPException(status_code=503, detail="Fila de processamento cheia, tente mais tarde")

        registration_id = await app.state.store.create_registration(request.to_row())
        try:
            queue.enqueue_registration(registration_id, request)
        except asyncio.QueueFull:
            await app.state.store.update_registration(
                registration_id,
                status=JobStatus.FAILED,
                error_message="Fila de processamento cheia",
                tempo_fim=utcnow(),
            )
            raise HTTPException(status_code=503, detail="Fila de processamento cheia, tente mais tarde")

        return {
            "success": True,
            "jobId": registration_id,
            "message": "Cadastro iniciado. Acompanhe o progresso pelo ID retornado.",
        }

    @app.get("/registrations")
    async def list_registrations(limit: int = Query(50, ge=1, le=200), _: bool = Depends(verify_api_key)):
        """Most recent registrations, newest first."""
        registrations = await app.state.store.list_registrations(limit)
        return {"success": True, "registrations": [r.public_dict() for r in registrations]}

    @app.get("/registrations/{registration_id}")
    async def get_registration(registration_id: str, _: bool = Depends(verify_api_key)):
        registration = await app.state.store.get_registration(registration_id)
        if registration is None:
            raise HTTPException(status_code=404, detail="Cadastro não encontrado")
        return {"success": True, "registration": registration.public_dict()}

    @app.get("/registrations/{registration_id}/comprovante")
    async def get_proof(registration_id: str, _: bool = Depends(verify_api_key)):
        """Download the saved confirmation page of a completed registration."""
        if await app.state.store.get_registration(registration_id) is None:
            raise HTTPException(status_code=404, detail="Cadastro não encontrado")
        proof_path = app.state.queue.context.evidence.proof_path(registration_id)
        if not proof_path.is_file():
            raise HTTPException(status_code=404, detail="Comprovante não encontrado")
        return FileResponse(proof_path, media_type="text/html", filename=f"comprovante-{registration_id}.html")

    @app.post("/registrations/{registration_id}/otp")
    async def deliver_otp(registration_id: str, body: OtpRequest, _: bool = Depends(verify_api_key)):
        """Hand the e-mailed passcode to the registration waiting for it."""
        mailbox = app.state.queue.context.mailbox
        if not mailbox.deliver(registration_id, body.code):
            if await app.state.store.get_registration(registration_id) is None:
                raise HTTPException(status_code=404, detail="Cadastro não encontrado")
            raise HTTPException(status_code=409, detail="Cadastro não está aguardando código OTP")
        return {"success": True}

    @app.post("/metrics/refresh")
    async def refresh_metrics(_: bool = Depends(verify_api_key)):
        await app.state.store.refresh_metrics()
        return {"success": True, "metrics": await app.state.store.get_metrics()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from regularize.logging_conf import setup_logging

    setup_logging()
    config.validate(require_supabase=False)
    uvicorn.run(app, host="0.0.0.0", port=8000)
