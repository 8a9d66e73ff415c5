"""URL builders for Regularize portal endpoints."""
from urllib.parse import urljoin, urlparse

from regularize.config import config


def _url(path: str) -> str:
    return f"{config.PORTAL_BASE_URL.rstrip('/')}{path}"


def portal_root() -> str:
    return _url("/")


def cadastro_url() -> str:
    """Form page where the CNPJ probe is submitted."""
    return _url(config.CADASTRO_PATH)


def registration_url() -> str:
    """Personal-data form posted during a full registration."""
    return _url(config.REGISTRATION_PATH)


def otp_url() -> str:
    return _url(config.OTP_PATH)


def finalize_url() -> str:
    return _url(config.FINALIZE_PATH)


def resolve(base_url: str, location: str | None) -> str | None:
    """Resolve a Location header against the request URL; None if unusable."""
    if not location or not location.strip():
        return None
    target = urljoin(base_url, location.strip())
    parsed = urlparse(target)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return target


def same_url(a: str | None, b: str | None) -> bool:
    """Compare URLs ignoring a trailing slash and the fragment."""
    if a is None or b is None:
        return a == b
    pa, pb = urlparse(a), urlparse(b)
    return (
        pa.scheme.lower() == pb.scheme.lower()
        and pa.netloc.lower() == pb.netloc.lower()
        and (pa.path.rstrip("/") or "/") == (pb.path.rstrip("/") or "/")
        and pa.query == pb.query
    )
