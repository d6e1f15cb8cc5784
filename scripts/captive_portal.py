#!/usr/bin/python3
"""Shared library for the captive portal: HTTP access, probing, form parsing and login submission."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Callable, Dict, List, Optional, Tuple

import requests

from portal_errors import (
    NetworkError,
    NetworkFailure,
    PortalError,
    PortalFailure,
    TokenExtractionError,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10
PROBE_EXPECTED_STATUS = 204

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
ACCEPT_HTML = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

MAGIC_FIELD = "magic"
REDIRECT_FIELD = "4Tredir"

SUCCESS_INDICATORS = ("keepalive", "logout", "success", "welcome")
ERROR_INDICATORS = ("invalid", "failed", "incorrect", "error", "login-form")

SESSION_TIMEOUT_PATTERNS = (
    re.compile(r"session[_\s]*timeout[_\s]*[:=]\s*(\d+)", re.IGNORECASE),
    re.compile(r"keepalive[_\s]*[:=]\s*(\d+)", re.IGNORECASE),
    re.compile(r"timeout[_\s]*[:=]\s*(\d+)[_\s]*min", re.IGNORECASE),
)


class ProbeResult(enum.Enum):
    CONNECTED = "connected"
    NEEDS_LOGIN = "needs_login"
    NETWORK_DOWN = "network_down"


class LoginOutcome(enum.Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    AMBIGUOUS = "ambiguous"


@dataclass
class PortalFormToken:
    magic_token: str
    redirect_url: str
    session_timeout: Optional[int] = None


# --- HTML token extraction -------------------------------------------------

Matcher = Callable[[str], Optional[str]]


class HiddenInputParser(HTMLParser):
    """Collects name/value pairs of every <input> element, first occurrence wins."""

    def __init__(self) -> None:
        super().__init__()
        self.inputs: Dict[str, str] = {}

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        if tag != "input":
            return
        attrs_dict: Dict[str, Optional[str]] = {key: value for key, value in attrs if key}
        name = attrs_dict.get("name")
        value = attrs_dict.get("value")
        if name and value and name not in self.inputs:
            self.inputs[name] = value


def _regex_matcher(pattern: str, group: int) -> Matcher:
    compiled = re.compile(pattern, re.IGNORECASE)

    def match(html: str) -> Optional[str]:
        found = compiled.search(html)
        return found.group(group) if found else None

    return match


def _parser_matcher(field: str) -> Matcher:
    def match(html: str) -> Optional[str]:
        parser = HiddenInputParser()
        parser.feed(html)
        parser.close()
        return parser.inputs.get(field)

    return match


def field_matchers(field: str) -> List[Matcher]:
    """Ordered matchers for a hidden form field, tolerant of quoting and attribute order."""
    name = re.escape(field)
    value = r"""([^"'<>]+)"""
    return [
        # name="x" value="y"
        _regex_matcher(rf"""name=(["']){name}\1\s+value=(["']){value}\2""", 3),
        # <input type="hidden" name="x" id="..." value="y">
        _regex_matcher(rf"""<input\b[^>]*\bname=(["']){name}\1[^>]*\bvalue=(["']){value}\2""", 3),
        # <input value="y" type="hidden" name="x">
        _regex_matcher(rf"""<input\b[^>]*\bvalue=(["']){value}\1[^>]*\bname=(["']){name}\3""", 2),
        _parser_matcher(field),
    ]


def first_match(html: str, matchers: List[Matcher]) -> Optional[str]:
    for matcher in matchers:
        value = matcher(html)
        if value:
            return value
    return None


def detect_session_timeout(html: str) -> Optional[int]:
    """Return the session timeout advertised by the portal page in seconds, if any."""
    for pattern in SESSION_TIMEOUT_PATTERNS:
        found = pattern.search(html)
        if not found:
            continue
        timeout = int(found.group(1))
        # Small values are minutes.
        if timeout < 60:
            timeout *= 60
        logger.info("Detected session timeout: %ss", timeout)
        return timeout
    return None


class FormTokenExtractor:
    def __init__(self, default_redirect_url: str) -> None:
        self.default_redirect_url = default_redirect_url
        self.magic_matchers = field_matchers(MAGIC_FIELD)
        self.redirect_matchers = field_matchers(REDIRECT_FIELD)

    def parse(self, html: str) -> PortalFormToken:
        magic = first_match(html, self.magic_matchers)
        if not magic:
            raise TokenExtractionError("Could not find magic token in login page")
        logger.debug("Extracted %s from form", MAGIC_FIELD)

        redirect = first_match(html, self.redirect_matchers)
        if redirect:
            logger.debug("Extracted %s from form", REDIRECT_FIELD)
        else:
            redirect = self.default_redirect_url

        return PortalFormToken(
            magic_token=magic,
            redirect_url=redirect,
            session_timeout=detect_session_timeout(html),
        )


# --- HTTP ------------------------------------------------------------------

class PortalHttpClient:
    """Bounded-timeout HTTP access sharing one cookie jar; redirects are manual by default."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: int = REQUEST_TIMEOUT) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, str]] = None,
        allow_redirects: bool = False,
    ) -> requests.Response:
        merged_headers = {"User-Agent": USER_AGENT, "Cache-Control": "no-cache"}
        merged_headers.update(headers or {})
        try:
            return self.session.request(
                method,
                url,
                headers=merged_headers,
                data=data,
                timeout=self.timeout,
                allow_redirects=allow_redirects,
            )
        except requests.Timeout as exc:
            raise NetworkError(NetworkFailure.TIMEOUT, f"{method} {url} timed out after {self.timeout}s") from exc
        except requests.ConnectionError as exc:
            raise NetworkError(NetworkFailure.CONNECTION_FAILURE, f"{method} {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkError(NetworkFailure.ABORTED, f"{method} {url} aborted: {exc}") from exc

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def head(self, url: str, **kwargs) -> requests.Response:
        return self.request("HEAD", url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        return self.request("POST", url, **kwargs)


# --- Connectivity ----------------------------------------------------------

def has_internet(http: PortalHttpClient, probe_url: str, expected_status: int = PROBE_EXPECTED_STATUS) -> bool:
    try:
        response = http.get(probe_url)
    except NetworkError as exc:
        logger.debug("Connectivity check failed: %s", exc)
        return False
    if response.status_code != expected_status:
        logger.debug("Connectivity check got unexpected response %s", response.status_code)
        return False
    return True


def portal_reachable(http: PortalHttpClient, portal_url: str) -> bool:
    try:
        response = http.head(portal_url)
    except NetworkError as exc:
        logger.debug("Portal check failed: %s", exc)
        return False
    return 200 <= response.status_code < 300 or response.status_code == 302


class ConnectivityProbe:
    def __init__(self, http: PortalHttpClient, probe_url: str, portal_url: str) -> None:
        self.http = http
        self.probe_url = probe_url
        self.portal_url = portal_url

    def probe(self) -> ProbeResult:
        logger.debug("Checking connectivity")
        if has_internet(self.http, self.probe_url):
            logger.debug("Internet connectivity confirmed")
            return ProbeResult.CONNECTED
        if portal_reachable(self.http, self.portal_url):
            logger.debug("Portal reachable, needs login")
            return ProbeResult.NEEDS_LOGIN
        return ProbeResult.NETWORK_DOWN


# --- Login -----------------------------------------------------------------

def build_login_payload(username: str, password: str, token: PortalFormToken) -> Dict[str, str]:
    return {
        "username": username,
        "password": password,
        MAGIC_FIELD: token.magic_token,
        REDIRECT_FIELD: token.redirect_url,
    }


def classify_login_response(status_code: int, body: str) -> LoginOutcome:
    if status_code in (302, 303):
        return LoginOutcome.SUCCESS
    if not 200 <= status_code < 300:
        return LoginOutcome.AMBIGUOUS

    text = body.lower()
    has_success = any(indicator in text for indicator in SUCCESS_INDICATORS)
    has_error = any(indicator in text for indicator in ERROR_INDICATORS)
    if has_error:
        return LoginOutcome.INVALID_CREDENTIALS
    if has_success:
        return LoginOutcome.SUCCESS
    return LoginOutcome.AMBIGUOUS


class PortalLoginClient:
    def __init__(self, http: PortalHttpClient, portal_url: str, portal_base: str) -> None:
        self.http = http
        self.portal_url = portal_url
        self.portal_base = portal_base.rstrip("/")
        self.extractor = FormTokenExtractor(portal_url)

    def fetch_form_token(self) -> PortalFormToken:
        response = self.http.get(self.portal_url, headers={"Accept": ACCEPT_HTML}, allow_redirects=True)
        if not 200 <= response.status_code < 300:
            raise PortalError(
                PortalFailure.AMBIGUOUS_RESPONSE,
                f"Failed to fetch login page: {response.status_code}",
            )
        logger.debug("Login page fetched successfully")
        return self.extractor.parse(response.text)

    def submit(self, username: str, password: str, token: PortalFormToken) -> LoginOutcome:
        response = self.http.post(
            f"{self.portal_base}/",
            data=build_login_payload(username, password, token),
            headers={
                "Accept": ACCEPT_HTML,
                "Origin": self.portal_base,
                "Referer": self.portal_url,
            },
        )
        body = response.text if 200 <= response.status_code < 300 else ""
        outcome = classify_login_response(response.status_code, body)
        logger.debug("Login response %s classified as %s", response.status_code, outcome.value)
        return outcome
