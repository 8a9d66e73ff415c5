"""Redaction module to mask secrets in outputs and logs."""
import re
from typing import Any, Dict

REDACTED = "[REDACTED]"

_SECRET_KEYS = {
    "senha",
    "password",
    "frase_seguranca",
    "fraseseguranca",
    "clientkey",
    "client_key",
    "h-captcha-response",
    "g-recaptcha-response",
    "captcha_token",
    "codigo",
    "otp",
    "cookie",
    "set-cookie",
    "authorization",
}

_PATTERNS = [
    (r'clientKey["\']?\s*[:=]\s*["\']([^"\']+)["\']', f'clientKey = "{REDACTED}"'),
    (r'(h-captcha-response|g-recaptcha-response)=([^&\s]+)', rf'\1={REDACTED}'),
    (r'gRecaptchaResponse["\']?\s*[:=]\s*["\']([^"\']+)["\']', f'gRecaptchaResponse = "{REDACTED}"'),
    (r'(senha|password|fraseSeguranca|frase_seguranca)=([^&\s]+)', rf'\1={REDACTED}'),
    (r'Authorization["\']?\s*[:=]\s*["\']?Bearer\s+([^"\'\s]+)', f'Authorization = "Bearer {REDACTED}"'),
    (r'(JSESSIONID|SESSION|XSRF-TOKEN)=([^;,\s]+)', rf'\1={REDACTED}'),
]


def redact_string(text: str) -> str:
    """Redact secrets from a string."""
    if not text:
        return text

    result = text
    for pattern, replacement in _PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    return result


def redact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively redact secrets from a dictionary."""
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        if str(key).lower() in _SECRET_KEYS:
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_dict(value)
        elif isinstance(value, list):
            redacted[key] = [redact_json(item) for item in value]
        elif isinstance(value, str):
            redacted[key] = redact_string(value)
        else:
            redacted[key] = value

    return redacted


def redact_json(data: Any) -> Any:
    """Redact secrets from JSON-serializable data."""
    if isinstance(data, dict):
        return redact_dict(data)
    elif isinstance(data, list):
        return [redact_json(item) for item in data]
    elif isinstance(data, str):
        return redact_string(data)
    else:
        return data
