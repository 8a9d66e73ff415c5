"""Exception hierarchy."""
from typing import Optional


class RegularizeError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(RegularizeError):
    """Input rejected before any job is created."""


class InvalidIdentifierError(ValidationError):
    def __init__(self, value: str, reason: str = "CNPJ deve conter 14 dígitos"):
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {value!r}")


class PortalTransportError(RegularizeError):
    """Network failure, timeout or unexpected status talking to the portal."""

    def __init__(self, cnpj: Optional[str], url: str, reason: str, status_code: Optional[int] = None):
        self.cnpj = cnpj
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{reason} (cnpj={cnpj}, url={url})")


class CaptchaError(RegularizeError):
    """CAPTCHA vendor failure."""


class CaptchaSolveError(CaptchaError):
    """The vendor reported an error for the task."""


class CaptchaTimeoutError(CaptchaError):
    """The task was not ready within the configured number of polls."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"CAPTCHA task {task_id} not solved after {attempts} polls")


class RegistrationError(RegularizeError):
    """A registration step could not be completed."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(message)


class StoreError(RegularizeError):
    """The job store could not be read or written."""
