"""Data models for jobs, outcomes and registrations."""
import hashlib
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator

from regularize.errors import InvalidIdentifierError
from regularize.parse import cnpj as cnpj_utils


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sha256_hex(value: str) -> str:
    """Digest stored in place of a cleartext secret."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ClassificationMethod(str, Enum):
    """Which rule produced a classification."""

    REDIRECT = "redirect_analysis"
    CONTENT = "content_analysis"
    UNCERTAIN = "uncertain"
    CHALLENGE = "challenge"
    CAPTCHA_FAILED = "captcha_failed"
    CAPTCHA_TIMEOUT = "captcha_timeout"
    CHALLENGE_UNRESOLVED = "challenge_unresolved"
    TRANSPORT_ERROR = "transport_error"
    ERROR = "error"


class ProbeOutcome(BaseModel):
    """Result of probing one CNPJ."""

    cnpj: str = Field(..., description="Canonical 14-digit CNPJ")
    classification: Optional[bool] = Field(
        default=None, description="True registered, False available, None indeterminate"
    )
    status: OutcomeStatus = OutcomeStatus.SUCCESS
    message: str = ""
    final_url: Optional[str] = None
    method: ClassificationMethod = ClassificationMethod.UNCERTAIN
    evidence: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Probe job as persisted in the job store."""

    id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total: int = 0
    cnpjs: list[str] = Field(default_factory=list)
    results: list[ProbeOutcome] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("results", mode="before")
    @classmethod
    def _null_results(cls, value: Any) -> Any:
        return value or []

    @field_validator("progress", "total", mode="before")
    @classmethod
    def _null_counters(cls, value: Any) -> Any:
        return value or 0


class RegistrationStep(str, Enum):
    """Registration step keys, in execution order."""

    ACCESSING_PORTAL = "accessing-portal"
    FILLING_FORM = "filling-form"
    SOLVING_CAPTCHA = "solving-captcha"
    AWAITING_OTP = "awaiting-otp"
    FINALIZING = "finalizing"
    COMPLETED = "completed"

    @property
    def label(self) -> str:
        return _STEP_LABELS[self]

    @property
    def progress(self) -> int:
        return _STEP_PROGRESS[self]


_STEP_LABELS = {
    RegistrationStep.ACCESSING_PORTAL: "Acessando site Regularize",
    RegistrationStep.FILLING_FORM: "Preenchendo formulário",
    RegistrationStep.SOLVING_CAPTCHA: "Resolvendo hCaptcha",
    RegistrationStep.AWAITING_OTP: "Aguardando código OTP",
    RegistrationStep.FINALIZING: "Finalizando cadastro",
    RegistrationStep.COMPLETED: "Cadastro concluído",
}

_STEP_PROGRESS = {
    RegistrationStep.ACCESSING_PORTAL: 20,
    RegistrationStep.FILLING_FORM: 40,
    RegistrationStep.SOLVING_CAPTCHA: 60,
    RegistrationStep.AWAITING_OTP: 80,
    RegistrationStep.FINALIZING: 100,
    RegistrationStep.COMPLETED: 100,
}


class RegistrationRequest(BaseModel):
    """Data bundle submitted to start a registration. Secrets stay in memory only."""

    cnpj: str
    cpf: str
    nome_mae: Optional[str] = None
    data_nascimento: date
    email: str
    celular: str
    senha: SecretStr
    frase_seguranca: SecretStr

    @field_validator("cnpj")
    @classmethod
    def _check_cnpj(cls, value: str) -> str:
        if not cnpj_utils.is_valid(value):
            raise ValueError("CNPJ deve conter 14 dígitos")
        return cnpj_utils.canonicalize(value)

    @field_validator("cpf")
    @classmethod
    def _check_cpf(cls, value: str) -> str:
        try:
            return cnpj_utils.validate_cpf(value)
        except InvalidIdentifierError as e:
            raise ValueError(e.reason) from e

    @field_validator("nome_mae")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("data_nascimento")
    @classmethod
    def _check_birth_date(cls, value: date) -> date:
        if value >= date.today():
            raise ValueError("Data de nascimento deve estar no passado")
        return value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or "." not in domain or " " in value:
            raise ValueError("E-mail inválido")
        return value.lower()

    @field_validator("celular")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        digits = cnpj_utils.canonicalize(value)
        if len(digits) not in (10, 11):
            raise ValueError("Celular deve conter DDD e número")
        return digits

    @field_validator("senha")
    @classmethod
    def _check_password(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 8:
            raise ValueError("Senha deve ter no mínimo 8 caracteres")
        return value

    @field_validator("frase_seguranca")
    @classmethod
    def _check_phrase(cls, value: SecretStr) -> SecretStr:
        size = len(value.get_secret_value())
        if size < 10 or size > 140:
            raise ValueError("Frase de segurança deve ter entre 10 e 140 caracteres")
        return value

    def to_row(self) -> dict[str, Any]:
        """Row for the registrations table, with digests instead of secrets."""
        return {
            "cnpj": self.cnpj,
            "cpf": self.cpf,
            "nome_mae": self.nome_mae,
            "data_nascimento": self.data_nascimento.isoformat(),
            "email": self.email,
            "celular": self.celular,
            "senha_hash": sha256_hex(self.senha.get_secret_value()),
            "frase_seguranca_hash": sha256_hex(self.frase_seguranca.get_secret_value()),
            "status": JobStatus.PENDING.value,
            "progresso": 0,
        }


class RegistrationRecord(BaseModel):
    """Registration row as persisted in the job store."""

    id: str
    cnpj: str
    cpf: str
    nome_mae: Optional[str] = None
    data_nascimento: Optional[date] = None
    email: str
    celular: str
    senha_hash: str
    frase_seguranca_hash: str
    status: JobStatus = JobStatus.PENDING
    progresso: int = 0
    etapa_atual: Optional[str] = None
    error_message: Optional[str] = None
    comprovante_url: Optional[str] = None
    tempo_inicio: Optional[datetime] = None
    tempo_fim: Optional[datetime] = None
    tempo_estimado: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("progresso", mode="before")
    @classmethod
    def _null_progress(cls, value: Any) -> Any:
        return value or 0

    def public_dict(self) -> dict[str, Any]:
        """API view: no digests, masked CPF."""
        data = self.model_dump(mode="json", exclude={"senha_hash", "frase_seguranca_hash"})
        data["cpf"] = cnpj_utils.mask_cpf(self.cpf)
        return data
