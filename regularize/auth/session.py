"""Portal session: cookies and form state captured from a page load."""
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
from selectolax.parser import HTMLParser

from regularize.parse.classifier import ChallengeInfo, detect_challenge

logger = logging.getLogger(__name__)

# Inputs that carry state the portal expects back on submit (CSRF, view state)
_STATE_INPUT_TYPES = {"hidden"}


def extract_hidden_fields(html: str | None, form_selector: str = "form") -> dict[str, str]:
    """Collect hidden inputs of the first form matching ``form_selector``."""
    if not html:
        return {}
    parser = HTMLParser(html)
    form = parser.css_first(form_selector) or parser.root
    if form is None:
        return {}
    fields: dict[str, str] = {}
    for node in form.css("input"):
        attrs = node.attributes
        name = attrs.get("name")
        input_type = (attrs.get("type") or "text").lower()
        if name and input_type in _STATE_INPUT_TYPES:
            fields[name] = attrs.get("value") or ""
    return fields


def extract_input_names(html: str | None) -> set[str]:
    """Names of every input/select/textarea on the page."""
    if not html:
        return set()
    parser = HTMLParser(html)
    names = set()
    for node in parser.css("input, select, textarea"):
        name = node.attributes.get("name")
        if name:
            names.add(name)
    return names


@dataclass
class PortalSession:
    """
    State carried between requests of one item's attempt.

    Created by ``PortalClient.load_page`` and updated with every response
    so cookies set by the portal along the way are sent back.
    """

    page_url: str
    cookies: httpx.Cookies = field(default_factory=httpx.Cookies)
    hidden_fields: dict[str, str] = field(default_factory=dict)
    challenge: Optional[ChallengeInfo] = None
    html: str = ""

    @classmethod
    def from_response(cls, response: httpx.Response, page_url: str) -> "PortalSession":
        session = cls(page_url=page_url)
        session.absorb(response)
        return session

    def absorb(self, response: httpx.Response) -> None:
        """Take cookies and form state from a response."""
        self.cookies.extract_cookies(response)
        html = response.text
        if html:
            self.html = html
            hidden = extract_hidden_fields(html)
            if hidden:
                self.hidden_fields.update(hidden)
            challenge = detect_challenge(html)
            if challenge is not None:
                self.challenge = challenge

    def start_page(self, url: str) -> None:
        """Move to another form; the next response supplies its hidden fields and challenge."""
        self.page_url = url
        self.hidden_fields = {}
        self.challenge = None
        self.html = ""

    def cookie_header(self) -> Optional[str]:
        """Cookie header value, or None when no cookie was captured."""
        pairs = [f"{cookie.name}={cookie.value}" for cookie in self.cookies.jar]
        return "; ".join(pairs) if pairs else None

    @property
    def site_key(self) -> Optional[str]:
        return self.challenge.site_key if self.challenge else None
