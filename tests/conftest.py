"""Shared fixtures: in-memory store, manual scheduler, fixed clock and a canned HTTP session."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pytest
import requests

from autologin_state import StateStore
from captive_portal import ConnectivityProbe, PortalHttpClient, PortalLoginClient
from credential_vault import CredentialVault
from login_orchestrator import LoginOrchestrator

PORTAL_URL = "https://portal.test:1442/login?"
PORTAL_BASE = "https://portal.test:1442"
PROBE_URL = "http://probe.test/generate_204"
LOGIN_POST_URL = f"{PORTAL_BASE}/"

LOGIN_PAGE = """
<html><body>
<form method="post" action="/">
  <input type="hidden" name="4Tredir" value="https://portal.test:1442/login?">
  <input type="hidden" name="magic" value="0a1b2c3d4e5f6a7b">
  <input type="text" name="username">
  <input type="password" name="password">
</form>
</body></html>
"""

NOW = 1_700_000_000_000


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self.data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, items: Mapping[str, Any]) -> None:
        self.data.update(items)

    def remove(self, *keys: str) -> None:
        for key in keys:
            self.data.pop(key, None)


class ScheduledCall:
    def __init__(self, seconds: float, callback: Callable[[], None]) -> None:
        self.seconds = seconds
        self.callback = callback
        self.cancelled = False
        self.fired = False


class FakeScheduler:
    """Records deferred callbacks; tests fire them explicitly."""

    def __init__(self) -> None:
        self.calls: List[ScheduledCall] = []

    def schedule_after(self, seconds: float, callback: Callable[[], None]) -> ScheduledCall:
        call = ScheduledCall(seconds, callback)
        self.calls.append(call)
        return call

    def cancel(self, token: ScheduledCall) -> None:
        token.cancelled = True

    @property
    def pending(self) -> List[ScheduledCall]:
        return [call for call in self.calls if not call.cancelled and not call.fired]

    @property
    def delays(self) -> List[float]:
        return [call.seconds for call in self.calls if not call.cancelled]

    def run_next(self) -> None:
        call = self.pending[0]
        call.fired = True
        call.callback()


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeSession:
    """Stands in for requests.Session; answers are queued per (method, url)."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(self, method: str, url: str, *results: Any) -> None:
        self.routes[(method, url)] = list(results)

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append((method, url, kwargs))
        results = self.routes.get((method, url))
        if not results:
            raise requests.ConnectionError(f"No route to {url}")
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, Exception):
            raise result
        return result

    def requested(self, method: str, url: str) -> List[Dict[str, Any]]:
        return [kwargs for m, u, kwargs in self.calls if (m, u) == (method, url)]


def make_response(status: int, body: str = "", url: str = "") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = body.encode("utf-8")
    response.encoding = "utf-8"
    response.url = url
    return response


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def http(session: FakeSession) -> PortalHttpClient:
    return PortalHttpClient(session=session, timeout=10)


@pytest.fixture
def vault(store: MemoryStore) -> CredentialVault:
    return CredentialVault(store, installation_id="install-1234", fingerprint="test-host|Linux|x86_64")


@pytest.fixture
def notifications() -> List[str]:
    return []


@pytest.fixture
def orchestrator(store, vault, http, scheduler, clock, notifications) -> LoginOrchestrator:
    return LoginOrchestrator(
        state_store=StateStore(store),
        vault=vault,
        probe=ConnectivityProbe(http, PROBE_URL, PORTAL_URL),
        portal=PortalLoginClient(http, PORTAL_URL, PORTAL_BASE),
        scheduler=scheduler,
        store=store,
        notifier=notifications.append,
        clock=clock,
    )
