"""Registration pipeline: create the Regularize account for one CNPJ."""
import logging
from typing import Optional

from regularize.captcha.solver import CaptchaSolver
from regularize.config import config
from regularize.errors import RegistrationError, RegularizeError, StoreError
from regularize.fetch.client import PortalClient, PortalResponse
from regularize.fetch import endpoints
from regularize.auth.session import PortalSession, extract_input_names
from regularize.jobs.otp import OtpMailbox
from regularize.jobs.probe import MSG_REGISTERED, captcha_fields
from regularize.parse.classifier import Classification, ResponseClassifier, page_text
from regularize.parse.cnpj import format_cnpj
from regularize.parse.models import JobStatus, RegistrationRecord, RegistrationRequest, RegistrationStep, utcnow
from regularize.parse.redact import redact_string
from regularize.store.base import JobStore
from regularize.store.evidence import EvidenceStore

logger = logging.getLogger(__name__)


def build_form_fields(request: RegistrationRequest) -> dict[str, str]:
    """Registration form payload. Holds cleartext secrets: never log or persist it."""
    senha = request.senha.get_secret_value()
    return {
        "cpfCnpj": request.cnpj,
        "cpf": request.cpf,
        "nomeMae": request.nome_mae or "",
        "dataNascimento": request.data_nascimento.strftime("%d/%m/%Y"),
        "email": request.email,
        "celular": request.celular,
        "senha": senha,
        "confirmacaoSenha": senha,
        "fraseSeguranca": request.frase_seguranca.get_secret_value(),
    }


class RegistrationRunner:
    """Drives one registration through its steps, recording each in the store."""

    def __init__(
        self,
        store: JobStore,
        client: PortalClient,
        solver: Optional[CaptchaSolver],
        mailbox: OtpMailbox,
        evidence: EvidenceStore,
        classifier: Optional[ResponseClassifier] = None,
        otp_timeout: Optional[float] = None,
        max_challenge_rounds: Optional[int] = None,
    ):
        self.store = store
        self.client = client
        self.solver = solver
        self.mailbox = mailbox
        self.evidence = evidence
        self.classifier = classifier or ResponseClassifier()
        self.otp_timeout = config.OTP_TIMEOUT if otp_timeout is None else otp_timeout
        self.max_challenge_rounds = (
            config.MAX_CHALLENGE_ROUNDS if max_challenge_rounds is None else max_challenge_rounds
        )

    async def _enter(self, registration_id: str, step: RegistrationStep) -> None:
        logger.info(f"Registration {registration_id}: {step.label} ({step.progress}%)")
        await self.store.update_registration(
            registration_id, etapa_atual=step.label, progresso=step.progress
        )

    async def _solve(self, step: RegistrationStep, site_key: Optional[str], page_url: str, kind: str) -> str:
        if self.solver is None:
            raise RegistrationError(step.value, "CAPTCHA solver not configured")
        if not site_key:
            raise RegistrationError(step.value, "CAPTCHA site key not found in page")
        return await self.solver.solve(site_key, page_url, kind)

    async def _follow(self, response: PortalResponse, session: PortalSession, cnpj: str) -> PortalResponse:
        """Load the page a 3xx points at, keeping the session."""
        target = endpoints.resolve(response.submitted_url, response.location) if response.is_redirect else None
        if target is None:
            return response
        follow = await self.client.get(target, session, cnpj=cnpj)
        session.page_url = target
        return follow

    async def _post_with_captcha(
        self, step: RegistrationStep, fields: dict[str, str], session: PortalSession, cnpj: str
    ) -> tuple[PortalResponse, Classification]:
        """Post the current form, solving CAPTCHA challenges along the way."""
        extra: dict[str, str] = {}
        if session.challenge is not None:
            token = await self._solve(step, session.site_key, session.page_url, session.challenge.kind)
            extra = captcha_fields(token)

        rounds = 0
        while True:
            response = await self.client.post_form(session.page_url, {**fields, **extra}, session, cnpj=cnpj)
            result = self.classifier.classify_response(response)
            if not result.is_challenge:
                return response, result
            if rounds >= self.max_challenge_rounds:
                raise RegistrationError(step.value, f"CAPTCHA persistiu após {rounds} resolução(ões)")
            rounds += 1
            token = await self._solve(
                step, result.challenge.site_key or session.site_key, session.page_url, result.challenge.kind
            )
            extra = captcha_fields(token)

    async def _check_cnpj(self, registration_id: str, cnpj: str, session: PortalSession) -> str:
        """Submit the CNPJ; returns the personal-data form URL when it is still available."""
        step = RegistrationStep.ACCESSING_PORTAL
        response, result = await self._post_with_captcha(step, {"cpfCnpj": cnpj}, session, cnpj)
        logger.info(
            f"Registration {registration_id}: CNPJ check answered {response.status_code} "
            f"({result.method.value}: {result.evidence!r})"
        )
        if result.registered:
            raise RegistrationError(step.value, MSG_REGISTERED)
        if response.is_redirect:
            target = endpoints.resolve(response.submitted_url, response.location)
            if target is not None:
                return target
        return endpoints.registration_url()

    async def _open_form(self, url: str, session: PortalSession, cnpj: str) -> PortalResponse:
        session.start_page(url)
        response = await self.client.get(url, session, cnpj=cnpj)
        return await self._follow(response, session, cnpj)

    async def _submit_form(
        self, registration_id: str, request: RegistrationRequest, session: PortalSession
    ) -> PortalResponse:
        """Post the personal data with the form's own hidden fields."""
        step = RegistrationStep.SOLVING_CAPTCHA
        response, result = await self._post_with_captcha(step, build_form_fields(request), session, request.cnpj)
        logger.info(
            f"Registration {registration_id}: form answered {response.status_code} "
            f"({result.method.value}: {result.evidence!r})"
        )
        if result.registered:
            raise RegistrationError(step.value, MSG_REGISTERED)
        return await self._follow(response, session, request.cnpj)

    async def _submit_otp(self, registration_id: str, code: str, session: PortalSession, cnpj: str) -> PortalResponse:
        response = await self.client.post_form(endpoints.otp_url(), {"codigo": code}, session, cnpj=cnpj)
        response = await self._follow(response, session, cnpj)
        text = page_text(response.body)
        for keyword in config.OTP_ERROR_KEYWORDS:
            if keyword.casefold() in text:
                raise RegistrationError(RegistrationStep.AWAITING_OTP.value, f"Código OTP rejeitado pelo portal: {keyword}")
        return response

    async def run(self, registration_id: str, request: RegistrationRequest) -> RegistrationRecord:
        """
        Execute every step; a failure in any step fails the registration.

        Errors raised by the steps are recorded on the row and not re-raised;
        store failures and unexpected exceptions are recorded and re-raised.
        """
        display = format_cnpj(request.cnpj)
        logger.info(f"Registration {registration_id} started for CNPJ {display}")
        step = RegistrationStep.ACCESSING_PORTAL
        try:
            await self.store.update_registration(
                registration_id, status=JobStatus.PROCESSING, tempo_inicio=utcnow()
            )

            await self._enter(registration_id, step)
            session = await self.client.load_page(endpoints.cadastro_url(), cnpj=request.cnpj)
            await self.evidence.save_step(registration_id, step.value, session.html, {"url": session.page_url})
            form_url = await self._check_cnpj(registration_id, request.cnpj, session)

            step = RegistrationStep.FILLING_FORM
            await self._enter(registration_id, step)
            response = await self._open_form(form_url, session, request.cnpj)
            await self.evidence.save_step(
                registration_id, step.value, response.body,
                {"url": session.page_url, "status_code": response.status_code},
            )
            expected = set(build_form_fields(request))
            missing = expected - extract_input_names(session.html)
            if missing == expected:
                raise RegistrationError(step.value, "Formulário de dados pessoais não encontrado")
            if missing:
                logger.warning(f"Registration {registration_id}: form lacks fields {sorted(missing)}")

            step = RegistrationStep.SOLVING_CAPTCHA
            await self._enter(registration_id, step)
            response = await self._submit_form(registration_id, request, session)
            await self.evidence.save_step(
                registration_id, step.value, response.body,
                {"url": response.final_url, "status_code": response.status_code},
            )

            step = RegistrationStep.AWAITING_OTP
            self.mailbox.open(registration_id)
            await self._enter(registration_id, step)
            code = await self.mailbox.wait_for(registration_id, self.otp_timeout)
            response = await self._submit_otp(registration_id, code, session, request.cnpj)
            await self.evidence.save_step(
                registration_id, step.value, response.body,
                {"url": response.final_url, "status_code": response.status_code},
            )

            step = RegistrationStep.FINALIZING
            await self._enter(registration_id, step)
            response = await self.client.post_form(
                endpoints.finalize_url(), {"confirmar": "true"}, session, cnpj=request.cnpj
            )
            response = await self._follow(response, session, request.cnpj)
            proof_ref = await self.evidence.save_proof(registration_id, response.body)

            step = RegistrationStep.COMPLETED
            await self.store.update_registration(
                registration_id,
                status=JobStatus.COMPLETED,
                etapa_atual=step.label,
                progresso=step.progress,
                comprovante_url=proof_ref,
                tempo_fim=utcnow(),
            )
            logger.info(f"Registration {registration_id} for CNPJ {display} completed")
        except StoreError as e:
            await self._fail(registration_id, step, e)
            raise
        except RegularizeError as e:
            await self._fail(registration_id, step, e)
        except Exception as e:
            await self._fail(registration_id, step, e)
            raise
        finally:
            self.mailbox.discard(registration_id)
            try:
                await self.store.refresh_metrics()
            except Exception as e:
                logger.warning(f"Metrics refresh failed: {e}")

        record = await self.store.get_registration(registration_id)
        return record

    async def _fail(self, registration_id: str, step: RegistrationStep, error: Exception) -> None:
        error_msg = redact_string(str(error)) or type(error).__name__
        logger.error(f"Registration {registration_id} failed at {step.value}: {error_msg}")
        try:
            await self.store.update_registration(
                registration_id,
                status=JobStatus.FAILED,
                error_message=error_msg[:500],
                tempo_fim=utcnow(),
            )
        except Exception as write_error:
            logger.error(f"Could not mark registration {registration_id} as failed: {write_error}")
