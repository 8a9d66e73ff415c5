"""CNPJ/CPF canonicalisation and validation."""
import re
from typing import Iterable

from regularize.errors import InvalidIdentifierError

CNPJ_LENGTH = 14
CPF_LENGTH = 11

_NON_DIGITS = re.compile(r"\D")
# Punctuated or bare CNPJ tokens inside free text (pasted lists, CSV cells)
_CNPJ_IN_TEXT = re.compile(r"(?<!\d)\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}(?!\d)")


def canonicalize(value: str | None) -> str:
    """Strip everything but digits."""
    if not value:
        return ""
    return _NON_DIGITS.sub("", value)


def is_valid(value: str | None) -> bool:
    return len(canonicalize(value)) == CNPJ_LENGTH


def validate(value: str | None) -> str:
    """Return the canonical CNPJ or raise InvalidIdentifierError."""
    digits = canonicalize(value)
    if len(digits) != CNPJ_LENGTH:
        raise InvalidIdentifierError(value or "")
    return digits


def validate_cpf(value: str | None) -> str:
    digits = canonicalize(value)
    if len(digits) != CPF_LENGTH:
        raise InvalidIdentifierError(value or "", reason="CPF deve conter 11 dígitos")
    return digits


def format_cnpj(value: str) -> str:
    """Display form NN.NNN.NNN/NNNN-NN; non-conforming input is returned unchanged."""
    digits = canonicalize(value)
    if len(digits) != CNPJ_LENGTH:
        return value
    return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"


def mask_cpf(value: str) -> str:
    """Hide the middle digits of a CPF for logs and API responses."""
    digits = canonicalize(value)
    if len(digits) != CPF_LENGTH:
        return "***"
    return f"{digits[:3]}.***.***-{digits[9:]}"


def extract_cnpjs(text: str | None) -> list[str]:
    """
    Find every CNPJ-shaped token in free text.

    Order and duplicates are preserved: a batch with the same CNPJ twice is
    probed twice.
    """
    if not text:
        return []
    return [canonicalize(match) for match in _CNPJ_IN_TEXT.findall(text)]


def split_valid(values: Iterable[str]) -> tuple[list[str], list[str]]:
    """Split raw inputs into (canonical valid CNPJs, rejected raw values)."""
    valid: list[str] = []
    rejected: list[str] = []
    for value in values:
        digits = canonicalize(value)
        if len(digits) == CNPJ_LENGTH:
            valid.append(digits)
        else:
            rejected.append(value)
    return valid, rejected
