"""Tests for captive-portal HTML token extraction and login response classification."""

import pytest

from captive_portal import (
    FormTokenExtractor,
    LoginOutcome,
    PortalFormToken,
    build_login_payload,
    classify_login_response,
    detect_session_timeout,
)
from portal_errors import TokenExtractionError

DEFAULT_REDIRECT = "https://portal.test:1442/login?"
TOKEN = "0a1b2c3d4e5f6a7b"


@pytest.fixture
def extractor():
    return FormTokenExtractor(DEFAULT_REDIRECT)


class TestMagicToken:
    @pytest.mark.parametrize(
        "html",
        [
            f'<input type="hidden" name="magic" value="{TOKEN}">',
            f"<input type='hidden' name='magic' value='{TOKEN}'>",
            f'<input name="magic" value="{TOKEN}" type="hidden">',
            f'<input type="hidden" name="magic" id="magic-field" value="{TOKEN}"/>',
            f'<input value="{TOKEN}" type="hidden" name="magic">',
            f"<input value='{TOKEN}' name='magic'>",
            f'<INPUT TYPE="hidden" NAME="magic" VALUE="{TOKEN}">',
            f"<input type=hidden name=magic value={TOKEN}>",
            f'<form><input name="magic" value=\'{TOKEN}\'></form>',
        ],
        ids=[
            "double-quotes",
            "single-quotes",
            "name-first-adjacent",
            "attributes-between",
            "value-first",
            "value-first-single",
            "uppercase",
            "unquoted",
            "mixed-quotes",
        ],
    )
    def test_recovers_exact_token(self, extractor, html):
        assert extractor.parse(html).magic_token == TOKEN

    def test_missing_token_raises(self, extractor):
        with pytest.raises(TokenExtractionError):
            extractor.parse('<form><input name="username"></form>')

    def test_empty_token_raises(self, extractor):
        with pytest.raises(TokenExtractionError):
            extractor.parse('<input type="hidden" name="magic" value="">')

    def test_first_match_wins(self, extractor):
        html = '<input name="magic" value="first"><input name="magic" value="second">'
        assert extractor.parse(html).magic_token == "first"

    def test_other_fields_are_not_mistaken_for_magic(self, extractor):
        html = f'<input name="magicword" value="nope"><input name="magic" value="{TOKEN}">'
        assert extractor.parse(html).magic_token == TOKEN


class TestRedirect:
    def test_extracts_redirect(self, extractor):
        html = f'<input name="4Tredir" value="http://example.com/"><input name="magic" value="{TOKEN}">'
        assert extractor.parse(html).redirect_url == "http://example.com/"

    def test_defaults_to_portal_url(self, extractor):
        token = extractor.parse(f'<input name="magic" value="{TOKEN}">')
        assert token.redirect_url == DEFAULT_REDIRECT


class TestSessionTimeout:
    @pytest.mark.parametrize(
        "html, expected",
        [
            ("var sessionTimeout = 1800;", 1800),
            ("session_timeout: 900", 900),
            ("keepalive=600", 600),
            ("keepalive: 20", 1200),
            ("timeout = 30 min", 1800),
            ("Session Timeout: 45", 2700),
        ],
    )
    def test_detects_timeout(self, html, expected):
        assert detect_session_timeout(html) == expected

    def test_no_hint_returns_none(self):
        assert detect_session_timeout("<html>nothing here</html>") is None

    def test_parse_carries_hint(self, extractor):
        html = f'<input name="magic" value="{TOKEN}"><script>keepalive = 25</script>'
        assert extractor.parse(html).session_timeout == 1500

    def test_parse_without_hint(self, extractor):
        assert extractor.parse(f'<input name="magic" value="{TOKEN}">').session_timeout is None


class TestClassifyLoginResponse:
    @pytest.mark.parametrize("status", [302, 303])
    def test_redirect_is_success(self, status):
        assert classify_login_response(status, "invalid") is LoginOutcome.SUCCESS

    def test_success_keyword(self):
        body = "<html><a href='/logout'>Logout</a> keepalive</html>"
        assert classify_login_response(200, body) is LoginOutcome.SUCCESS

    def test_failure_keyword_is_invalid_credentials(self):
        body = "<p>Invalid username or password</p>"
        assert classify_login_response(200, body) is LoginOutcome.INVALID_CREDENTIALS

    def test_failure_keyword_wins_over_success(self):
        body = "Welcome back. Authentication FAILED."
        assert classify_login_response(200, body) is LoginOutcome.INVALID_CREDENTIALS

    def test_no_keyword_is_ambiguous(self):
        assert classify_login_response(200, "<html>please wait</html>") is LoginOutcome.AMBIGUOUS

    @pytest.mark.parametrize("status", [301, 401, 500, 503])
    def test_other_status_is_ambiguous(self, status):
        assert classify_login_response(status, "welcome") is LoginOutcome.AMBIGUOUS


def test_build_login_payload():
    token = PortalFormToken(magic_token=TOKEN, redirect_url=DEFAULT_REDIRECT)
    assert build_login_payload("alice", "s3cret", token) == {
        "username": "alice",
        "password": "s3cret",
        "magic": TOKEN,
        "4Tredir": DEFAULT_REDIRECT,
    }
