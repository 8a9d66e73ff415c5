"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", PROJECT_ROOT / "data"))
EVIDENCE_DIR = DATA_DIR / "evidence"
STATE_DB = DATA_DIR / "state.db"


def _list_env(name: str, default: list[str]) -> list[str]:
    """Read a comma-separated list from the environment."""
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Regularize portal
    PORTAL_BASE_URL: str = os.getenv("PORTAL_BASE_URL", "https://www.regularize.pgfn.gov.br")
    CADASTRO_PATH: str = os.getenv("CADASTRO_PATH", "/cadastro")
    REGISTRATION_PATH: str = os.getenv("REGISTRATION_PATH", "/cadastro/dados-pessoais")
    OTP_PATH: str = os.getenv("OTP_PATH", "/cadastro/validar-codigo")
    FINALIZE_PATH: str = os.getenv("FINALIZE_PATH", "/cadastro/finalizar")
    USER_AGENT: str = os.getenv(
        "USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    )

    # Transport
    PORTAL_TIMEOUT: float = float(os.getenv("PORTAL_TIMEOUT", "30"))
    RATE_PER_DOMAIN: float = float(os.getenv("RATE_PER_DOMAIN", "1.0"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))

    # Orchestration
    ITEM_DELAY: float = float(os.getenv("ITEM_DELAY", "3.0"))
    MAX_CHALLENGE_ROUNDS: int = int(os.getenv("MAX_CHALLENGE_ROUNDS", "2"))
    PRESOLVE_CAPTCHA: bool = _bool_env("PRESOLVE_CAPTCHA", False)
    WORKER_CONCURRENCY: int = int(os.getenv("WORKER_CONCURRENCY", "2"))
    QUEUE_MAXSIZE: int = int(os.getenv("QUEUE_MAXSIZE", "50"))
    OTP_TIMEOUT: float = float(os.getenv("OTP_TIMEOUT", "600"))

    # CAPTCHA vendor
    CAPTCHA_API_URL: str = os.getenv("CAPTCHA_API_URL", "https://api.solvecaptcha.com")
    CAPTCHA_API_KEY: str | None = os.getenv("SOLVECAPTCHA_API_KEY") or os.getenv("CAPTCHA_API_KEY")
    CAPTCHA_POLL_INTERVAL: float = float(os.getenv("CAPTCHA_POLL_INTERVAL", "5"))
    CAPTCHA_MAX_ATTEMPTS: int = int(os.getenv("CAPTCHA_MAX_ATTEMPTS", "60"))

    # Classifier rules (lower-case phrases, matched case-insensitively)
    REGISTERED_KEYWORDS: list[str] = _list_env(
        "REGISTERED_KEYWORDS",
        [
            "já cadastrado",
            "já possui cadastro",
            "já está cadastrado",
            "cnpj informado já está cadastrado",
            "faça seu login",
            "efetue o login",
        ],
    )
    AVAILABLE_KEYWORDS: list[str] = _list_env(
        "AVAILABLE_KEYWORDS",
        [
            "nome da mãe",
            "data de nascimento",
            "frase de segurança",
            "cpf do responsável",
            "telefone celular",
        ],
    )
    REGISTERED_PATH_MARKERS: list[str] = _list_env(
        "REGISTERED_PATH_MARKERS",
        ["login", "dashboard", "home", "inicio", "acesso", "painel"],
    )
    CONTINUE_PATH_MARKERS: list[str] = _list_env(
        "CONTINUE_PATH_MARKERS",
        ["/cadastro", "dados-pessoais", "continuar-cadastro"],
    )
    CHALLENGE_MARKERS: list[str] = _list_env(
        "CHALLENGE_MARKERS",
        ["h-captcha", "hcaptcha.com/1/api.js", "g-recaptcha", "data-sitekey"],
    )
    OTP_ERROR_KEYWORDS: list[str] = _list_env(
        "OTP_ERROR_KEYWORDS",
        ["código inválido", "código expirado", "codigo invalido", "código incorreto"],
    )

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE") or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    JOBS_TABLE: str = os.getenv("JOBS_TABLE", "cnpj_jobs")
    REGISTRATIONS_TABLE: str = os.getenv("REGISTRATIONS_TABLE", "cadastros")
    METRICS_TABLE: str = os.getenv("METRICS_TABLE", "metrics")

    # Evidence
    EVIDENCE_PUBLIC_URL: str | None = os.getenv("EVIDENCE_PUBLIC_URL")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @property
    def cadastro_url(self) -> str:
        return f"{self.PORTAL_BASE_URL.rstrip('/')}{self.CADASTRO_PATH}"

    @classmethod
    def validate(cls, require_supabase: bool = True, require_captcha: bool = True) -> None:
        """Validate required configuration."""
        errors = []
        if require_supabase:
            if not cls.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not cls.SUPABASE_SERVICE_ROLE:
                errors.append("SUPABASE_SERVICE_ROLE is required")
        if require_captcha and not cls.CAPTCHA_API_KEY:
            errors.append("SOLVECAPTCHA_API_KEY is required")
        if cls.ITEM_DELAY < 0:
            errors.append("ITEM_DELAY must be >= 0")
        if cls.CAPTCHA_MAX_ATTEMPTS < 1:
            errors.append("CAPTCHA_MAX_ATTEMPTS must be >= 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
