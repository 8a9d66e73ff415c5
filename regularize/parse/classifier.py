"""
Classify portal responses into registered / available / challenge.

Precedence is fixed:

1. redirect target (3xx Location, or final URL different from the submitted one)
2. CAPTCHA challenge markup in the body
3. keyword scan of the page text

Every classification carries the rule that fired (``method``) and the raw
signal that matched (``evidence``) so a result can be audited afterwards.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

from selectolax.parser import HTMLParser

from regularize.config import config
from regularize.fetch.endpoints import resolve, same_url
from regularize.parse.models import ClassificationMethod

logger = logging.getLogger(__name__)

EVIDENCE_MAX_CHARS = 200

_SITEKEY_PATTERNS = [
    r'data-sitekey=["\']([^"\']+)["\']',
    r'sitekey:\s*["\']([^"\']+)["\']',
    r'["\']sitekey["\']:\s*["\']([^"\']+)["\']',
    r'hcaptcha.*?sitekey.*?["\']([0-9a-f\-]{20,})["\']',
]


@dataclass
class ChallengeInfo:
    """CAPTCHA widget found in a page."""

    site_key: Optional[str]
    kind: str = "hcaptcha"


@dataclass
class Classification:
    registered: Optional[bool]
    method: ClassificationMethod
    evidence: Optional[str] = None
    final_url: Optional[str] = None
    challenge: Optional[ChallengeInfo] = None

    @property
    def is_challenge(self) -> bool:
        return self.challenge is not None


@dataclass
class ClassifierRules:
    """Keyword lists and URL markers; all of it is configuration."""

    registered_keywords: list[str] = field(default_factory=list)
    available_keywords: list[str] = field(default_factory=list)
    registered_path_markers: list[str] = field(default_factory=list)
    continue_path_markers: list[str] = field(default_factory=list)
    challenge_markers: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls) -> "ClassifierRules":
        return cls(
            registered_keywords=list(config.REGISTERED_KEYWORDS),
            available_keywords=list(config.AVAILABLE_KEYWORDS),
            registered_path_markers=list(config.REGISTERED_PATH_MARKERS),
            continue_path_markers=list(config.CONTINUE_PATH_MARKERS),
            challenge_markers=list(config.CHALLENGE_MARKERS),
        )


def _truncate(text: str, limit: int = EVIDENCE_MAX_CHARS) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def page_text(html: str | None) -> str:
    """Visible text of a page, lower-cased; scripts and styles dropped."""
    if not html:
        return ""
    parser = HTMLParser(html)
    for node in parser.css("script, style, noscript"):
        node.decompose()
    root = parser.body or parser.root
    text = root.text(separator=" ") if root is not None else ""
    return " ".join(text.split()).casefold()


def extract_site_key(html: str | None) -> Optional[str]:
    """Find the CAPTCHA site key in a page, trying the widget attribute first."""
    if not html:
        return None
    parser = HTMLParser(html)
    node = parser.css_first("[data-sitekey]")
    if node is not None:
        key = (node.attributes.get("data-sitekey") or "").strip()
        if key:
            return key
    for pattern in _SITEKEY_PATTERNS:
        match = re.search(pattern, html, re.IGNORECASE | re.DOTALL)
        if match:
            return match.group(1)
    return None


def detect_challenge(html: str | None, rules: ClassifierRules | None = None) -> Optional[ChallengeInfo]:
    """Return the challenge descriptor if the page carries CAPTCHA markup."""
    if not html:
        return None
    rules = rules or ClassifierRules.from_config()
    html_lower = html.lower()
    if not any(marker.lower() in html_lower for marker in rules.challenge_markers):
        return None
    kind = "recaptcha" if "g-recaptcha" in html_lower and "hcaptcha" not in html_lower and "h-captcha" not in html_lower else "hcaptcha"
    return ChallengeInfo(site_key=extract_site_key(html), kind=kind)


def classify_url(url: str, rules: ClassifierRules) -> Optional[bool]:
    """
    Classify a redirect target by its shape.

    Root or login/dashboard/home pages mean the CNPJ already has an account;
    a continue-registration path means it is available. Anything else is
    undecided (None).
    """
    parsed = urlparse(url)
    path = parsed.path.lower()
    if path.rstrip("/") == "":
        return True
    # Whole segments only, extension dropped: "login.jsf" matches, "acesso-senha" does not
    segments = {s.split(".", 1)[0] for s in path.split("/") if s}
    for marker in rules.registered_path_markers:
        marker = marker.lower().strip("/")
        if marker in segments:
            return True
    full = f"{path}?{parsed.query}" if parsed.query else path
    for marker in rules.continue_path_markers:
        if marker.lower() in full:
            return False
    return None


def _match_keywords(text: str, keywords: list[str]) -> Optional[str]:
    for keyword in keywords:
        needle = keyword.casefold()
        if needle and needle in text:
            return keyword
    return None


def _snippet(text: str, keyword: str, radius: int = 60) -> str:
    index = text.find(keyword.casefold())
    if index < 0:
        return keyword
    start = max(0, index - radius)
    end = min(len(text), index + len(keyword) + radius)
    return _truncate(text[start:end])


def classify_content(html: str | None, rules: ClassifierRules) -> tuple[bool, ClassificationMethod, str]:
    """Keyword scan; both-or-neither defaults to available with method uncertain."""
    text = page_text(html)
    if not text:
        return False, ClassificationMethod.UNCERTAIN, "empty body"

    registered_hit = _match_keywords(text, rules.registered_keywords)
    available_hit = _match_keywords(text, rules.available_keywords)

    if registered_hit and not available_hit:
        return True, ClassificationMethod.CONTENT, _snippet(text, registered_hit)
    if available_hit and not registered_hit:
        return False, ClassificationMethod.CONTENT, _snippet(text, available_hit)
    if registered_hit and available_hit:
        return False, ClassificationMethod.UNCERTAIN, f"both keyword sets matched: {registered_hit!r} / {available_hit!r}"
    return False, ClassificationMethod.UNCERTAIN, "no keyword matched"


class ResponseClassifier:
    """Applies the redirect > challenge > content precedence to a portal response."""

    def __init__(self, rules: ClassifierRules | None = None):
        self.rules = rules or ClassifierRules.from_config()

    def classify(
        self,
        status_code: int,
        headers: dict | None,
        body: str | None,
        final_url: str | None = None,
        submitted_url: str | None = None,
    ) -> Classification:
        headers = headers or {}
        base_url = submitted_url or final_url or config.cadastro_url

        # 1. Redirect precedence
        target = None
        if 300 <= status_code < 400:
            target = resolve(base_url, headers.get("location") or headers.get("Location"))
            if target is None:
                logger.debug(f"Redirect {status_code} without usable Location, falling back to content")
        elif final_url and submitted_url and not same_url(final_url, submitted_url):
            target = final_url

        if target is not None:
            verdict = classify_url(target, self.rules)
            if verdict is not None:
                return Classification(
                    registered=verdict,
                    method=ClassificationMethod.REDIRECT,
                    evidence=target,
                    final_url=target,
                )
            logger.debug(f"Redirect target {target} matches no URL rule, falling back to content")

        resolved_url = target or final_url or submitted_url

        # 2. Challenge detection
        challenge = detect_challenge(body, self.rules)
        if challenge is not None:
            return Classification(
                registered=None,
                method=ClassificationMethod.CHALLENGE,
                evidence=f"{challenge.kind} site_key={challenge.site_key}",
                final_url=resolved_url,
                challenge=challenge,
            )

        # 3. Content keywords
        registered, method, evidence = classify_content(body, self.rules)
        return Classification(
            registered=registered,
            method=method,
            evidence=evidence,
            final_url=resolved_url,
        )

    def classify_response(self, response) -> Classification:
        """Classify a ``PortalResponse``."""
        return self.classify(
            status_code=response.status_code,
            headers=response.headers,
            body=response.body,
            final_url=response.final_url,
            submitted_url=response.submitted_url,
        )
