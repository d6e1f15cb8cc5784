#!/usr/bin/python3
"""Login state machine: probes connectivity, logs in, renews sessions and retries with backoff."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol

from autologin_state import AuthState, AuthStatus, KeyValueStore, StateStore
from captive_portal import ConnectivityProbe, LoginOutcome, PortalLoginClient, ProbeResult
from credential_vault import CredentialVault
from logging_config import DEBUG_LOGS_KEY
from portal_errors import (
    ConfigurationError,
    DecryptionError,
    KeyDerivationError,
    StorageError,
)

logger = logging.getLogger(__name__)

RENEW_BEFORE = 120  # seconds before expiry
RETRY_DELAYS = (5, 15, 45, 120)  # seconds
CREDENTIALS_UPDATED_DELAY = 1
STARTUP_DELAY = 2

PAUSED_KEY = "paused"

NOT_CONFIGURED = "Credentials not configured"
DECRYPT_FAILED = "Failed to decrypt credentials"
INVALID_CREDENTIALS = "Invalid credentials"
NETWORK_UNREACHABLE = "Network unreachable"
NETWORK_RETRIES_EXCEEDED = "Network unreachable - max retries exceeded"

CREDENTIAL_ERRORS = frozenset({NOT_CONFIGURED, DECRYPT_FAILED, INVALID_CREDENTIALS})


class Scheduler(Protocol):
    def schedule_after(self, seconds: float, callback: Callable[[], None]) -> Any: ...

    def cancel(self, token: Any) -> None: ...


class TimerScheduler:
    def schedule_after(self, seconds: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(seconds, callback)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, token: threading.Timer) -> None:
        token.cancel()


def epoch_millis() -> int:
    return int(time.time() * 1000)


def renewal_delay(session_timeout: int) -> int:
    """Seconds after a successful login at which the session is renewed."""
    if session_timeout > RENEW_BEFORE:
        return session_timeout - RENEW_BEFORE
    # Shorter than the renewal lead: renew halfway through the session.
    return max(session_timeout // 2, 1)


def _log_notification(message: str) -> None:
    logger.warning("Action required: %s. Please check the stored credentials.", message)


class LoginOrchestrator:
    """Single writer of the AuthState.

    Triggers: ``tick`` (periodic), ``force_login``, ``set_paused`` and
    ``credentials_updated``. Cycles never overlap; retries are deferred through
    the scheduler and dropped when a newer trigger supersedes them.
    """

    def __init__(
        self,
        state_store: StateStore,
        vault: CredentialVault,
        probe: ConnectivityProbe,
        portal: PortalLoginClient,
        scheduler: Scheduler,
        store: KeyValueStore,
        notifier: Optional[Callable[[str], None]] = None,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self.state_store = state_store
        self.vault = vault
        self.probe = probe
        self.portal = portal
        self.scheduler = scheduler
        self.store = store
        self.notifier = notifier or _log_notification
        self.clock = clock

        self._cycle_lock = threading.Lock()
        self._schedule_lock = threading.Lock()
        self._generation = 0
        self._pending: Any = None
        self._network_retries = 0
        self._login_retries = 0
        self._forced = False

    @property
    def state(self) -> AuthState:
        return self.state_store.state

    @property
    def paused(self) -> bool:
        return bool(self.store.get(PAUSED_KEY, False))

    @property
    def retry_pending(self) -> bool:
        return self._pending is not None

    # --- triggers ----------------------------------------------------------

    def start(self) -> None:
        self.state_store.load()
        paused = self.paused
        logger.info("Auto-login started", extra={"data": {"paused": paused}})
        self._forced = False
        if not paused:
            self._schedule(STARTUP_DELAY, self.run_cycle)

    def stop(self) -> None:
        self._new_generation()

    def tick(self) -> None:
        if self.paused:
            logger.debug("Auto-login paused, skipping check")
            return
        if self.retry_pending:
            logger.debug("Retry pending, skipping periodic check")
            return
        logger.debug("Periodic connectivity check triggered")
        self._forced = False
        self.run_cycle()

    def force_login(self) -> bool:
        logger.info("Force login requested")
        self._new_generation()
        self._forced = True
        return self.run_cycle(force=True)

    def set_paused(self, paused: bool) -> None:
        self.store.set({PAUSED_KEY: paused})
        logger.info("Auto-login %s", "paused" if paused else "resumed")
        self._new_generation()
        if not paused:
            self._forced = False
            self.run_cycle()

    def credentials_updated(self) -> None:
        if self.state.last_error not in CREDENTIAL_ERRORS:
            return
        logger.info("Credentials updated, attempting login")
        self._reset_retries()
        self.state_store.update(status=AuthStatus.IDLE, last_error=None, retry_count=0)
        self._forced = False
        self._schedule(CREDENTIALS_UPDATED_DELAY, self.run_cycle)

    # --- request/response protocol -----------------------------------------

    def handle_message(self, request: Dict[str, Any]) -> Dict[str, Any]:
        kind = request.get("type")

        if kind == "get-state":
            return self.state.to_dict()

        if kind == "force-login":
            if self.state.status is AuthStatus.CONNECTED:
                return {"success": False, "message": "Already connected"}
            if self.state.status is AuthStatus.CHECKING or not self.force_login():
                return {"success": False, "message": "Already checking..."}
            return {"success": True}

        if kind == "toggle-pause":
            try:
                self.set_paused(bool(request.get("paused")))
            except StorageError as exc:
                return {"success": False, "message": str(exc)}
            return {"success": True}

        if kind == "get-debug-logs":
            return {"logs": list(self.store.get(DEBUG_LOGS_KEY) or [])}

        if kind == "clear-debug-logs":
            try:
                self.store.remove(DEBUG_LOGS_KEY)
            except StorageError:
                return {"success": False}
            return {"success": True}

        return {"error": "Unknown message type"}

    # --- cycle -------------------------------------------------------------

    def run_cycle(self, force: bool = False) -> bool:
        """Run one check-and-login cycle; returns False when another cycle is in flight."""
        return self._run_exclusive(lambda: self._check_and_login(force))

    def _run_exclusive(self, action: Callable[[], None]) -> bool:
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Login cycle already in progress, trigger ignored")
            return False
        try:
            action()
        except Exception as exc:
            logger.exception("Login cycle failed")
            self.state_store.update(status=AuthStatus.ERROR, last_error=str(exc), is_connected=False)
        finally:
            self._cycle_lock.release()
        return True

    def _check_and_login(self, force: bool) -> None:
        self.state_store.update(status=AuthStatus.CHECKING)

        next_renew_at = self.state.next_renew_at
        should_renew = next_renew_at is not None and self.clock() >= next_renew_at

        if force:
            logger.info("Forced login, skipping connectivity probe")
        elif should_renew:
            logger.info("Session renewal required")
        else:
            result = self.probe.probe()
            if result is ProbeResult.CONNECTED:
                self._reset_retries()
                self.state_store.update(
                    status=AuthStatus.CONNECTED,
                    is_connected=True,
                    last_error=None,
                    retry_count=0,
                )
                return
            if result is ProbeResult.NETWORK_DOWN:
                self._handle_network_down()
                return
            self.state_store.update(status=AuthStatus.NEEDS_LOGIN, is_connected=False)

        self._perform_login()

    def _handle_network_down(self) -> None:
        if self._network_retries < len(RETRY_DELAYS):
            delay = RETRY_DELAYS[self._network_retries]
            self._network_retries += 1
            self.state_store.update(
                status=AuthStatus.NETWORK_DOWN,
                last_error=NETWORK_UNREACHABLE,
                is_connected=False,
                retry_count=self._network_retries,
            )
            logger.warning("Network down, retrying in %ss (attempt %s)", delay, self._network_retries)
            self._schedule(delay, self.run_cycle)
        else:
            self._network_retries = 0
            self.state_store.update(
                status=AuthStatus.NETWORK_DOWN,
                last_error=NETWORK_RETRIES_EXCEEDED,
                is_connected=False,
                retry_count=0,
            )
            logger.error("Max retries exceeded for network connectivity")

    def _perform_login(self) -> None:
        started = self.clock()
        logger.info("Starting login process")

        try:
            username, password = self.vault.load_credentials()
        except ConfigurationError:
            self._credentials_unusable(NOT_CONFIGURED)
            return
        except (DecryptionError, KeyDerivationError, StorageError) as exc:
            logger.error("Could not decrypt stored credentials: %s", exc)
            self._credentials_unusable(DECRYPT_FAILED)
            return

        try:
            token = self.portal.fetch_form_token()
            if token.session_timeout and token.session_timeout != self.state.session_timeout:
                self.state_store.update(session_timeout=token.session_timeout)
            outcome = self.portal.submit(username, password, token)
        except Exception as exc:
            logger.error("Login failed after %sms: %s", self.clock() - started, exc)
            self._handle_login_failure(str(exc))
            return

        if outcome is LoginOutcome.SUCCESS:
            self._login_succeeded(started)
        elif outcome is LoginOutcome.INVALID_CREDENTIALS:
            logger.warning("Login failed (error indicators found)")
            self._login_retries = 0
            self.state_store.update(
                status=AuthStatus.ERROR,
                last_error=INVALID_CREDENTIALS,
                is_connected=False,
                retry_count=0,
            )
            self.notifier(INVALID_CREDENTIALS)
        else:
            self._handle_login_failure("Unexpected response from portal")

    def _login_succeeded(self, started: int) -> None:
        now = self.clock()
        session_timeout = self.state.session_timeout
        if session_timeout <= RENEW_BEFORE:
            logger.warning(
                "Session timeout of %ss is shorter than the renewal lead of %ss", session_timeout, RENEW_BEFORE
            )
        self._reset_retries()
        self.state_store.update(
            status=AuthStatus.CONNECTED,
            is_connected=True,
            last_error=None,
            last_login_at=now,
            next_renew_at=now + renewal_delay(session_timeout) * 1000,
            retry_count=0,
        )
        logger.info("Login completed successfully in %sms", now - started)

    def _handle_login_failure(self, message: str) -> None:
        if self._login_retries < len(RETRY_DELAYS):
            delay = RETRY_DELAYS[self._login_retries]
            self._login_retries += 1
            self.state_store.update(
                status=AuthStatus.ERROR,
                last_error=message,
                retry_count=self._login_retries,
            )
            logger.warning("Retrying login in %ss (attempt %s)", delay, self._login_retries)
            self._schedule(delay, self._retry_login)
        else:
            self._login_retries = 0
            self.state_store.update(
                status=AuthStatus.ERROR,
                last_error=f"Login failed - {message}",
                is_connected=False,
                retry_count=0,
            )
            logger.error("Max retries exceeded for login")

    def _credentials_unusable(self, message: str) -> None:
        self.state_store.update(status=AuthStatus.ERROR, last_error=message, is_connected=False)
        self.notifier(message)

    def _retry_login(self) -> None:
        self._run_exclusive(self._perform_login)

    def _reset_retries(self) -> None:
        self._network_retries = 0
        self._login_retries = 0

    # --- scheduling --------------------------------------------------------

    def _new_generation(self) -> None:
        with self._schedule_lock:
            self._generation += 1
            self._cancel_pending()

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self.scheduler.cancel(self._pending)
            self._pending = None

    def _schedule(self, delay: float, action: Callable[[], Any]) -> None:
        with self._schedule_lock:
            self._cancel_pending()
            self._generation += 1
            generation = self._generation
            forced = self._forced

            def fire() -> None:
                with self._schedule_lock:
                    if generation != self._generation:
                        logger.debug("Dropping stale scheduled callback")
                        return
                    self._pending = None
                    if not forced and self.paused:
                        logger.debug("Auto-login paused, dropping scheduled check")
                        return
                action()

            self._pending = self.scheduler.schedule_after(delay, fire)
