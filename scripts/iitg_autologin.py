#!/usr/bin/python3
#
# Description:
# Keeps a device logged in to the IITG (Agnigarh) captive portal.
# It checks internet connectivity every minute and, when the portal blocks
# traffic, submits the stored (encrypted) credentials together with the
# portal's magic token. Sessions are renewed shortly before they expire and
# transient failures are retried with backoff. The configuration at the top
# should be enough to adapt to another portal of the same layout.

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from autologin_state import SNAPSHOT_KEY, JsonFileStore, StateStore
from captive_portal import ConnectivityProbe, PortalHttpClient, PortalLoginClient
from credential_vault import CREDENTIALS_KEY, SALT_KEY, CredentialVault
from logging_config import setup_logging
from login_orchestrator import PAUSED_KEY, LoginOrchestrator, TimerScheduler
from portal_errors import AutoLoginError, ValidationError

### CONFIGURATION (edit for other portals) ###
# Login page and form target of the portal.
PORTAL_URL = "https://agnigarh.iitg.ac.in:1442/login?"
PORTAL_BASE = "https://agnigarh.iitg.ac.in:1442"

# Connectivity check: answers 204 only when the internet is really reachable.
PROBE_URL = "http://connectivitycheck.gstatic.com/generate_204"

# Timeouts and intervals (seconds).
REQUEST_TIMEOUT = 10
CHECK_INTERVAL = 60
STORE_POLL_INTERVAL = 1

# Where state, encrypted credentials and logs are kept.
STATE_FILE = Path(os.environ.get("IITG_AUTOLOGIN_STATE", "~/.config/iitg-autologin/state.json")).expanduser()
LOG_DIR = Path(os.environ.get("IITG_AUTOLOGIN_LOG_DIR", "~/.local/state/iitg-autologin/logs")).expanduser()

# Minimum lengths accepted when saving credentials.
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 4

### END OF CONFIGURATION ###

logger = logging.getLogger("iitg_autologin")


def build_orchestrator(store: JsonFileStore, publish_state: bool = False) -> LoginOrchestrator:
    http = PortalHttpClient(timeout=REQUEST_TIMEOUT)
    return LoginOrchestrator(
        state_store=StateStore(store, publish_snapshot=publish_state),
        vault=CredentialVault(store),
        probe=ConnectivityProbe(http, PROBE_URL, PORTAL_URL),
        portal=PortalLoginClient(http, PORTAL_URL, PORTAL_BASE),
        scheduler=TimerScheduler(),
        store=store,
    )


def validate_credentials(username: str, password: str) -> str:
    username = username.strip()
    if not username:
        raise ValidationError("Username is required")
    if not password:
        raise ValidationError("Password is required")
    if len(username) < MIN_USERNAME_LENGTH:
        raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return username


def format_timestamp(millis: Optional[int]) -> str:
    if not millis:
        return "never"
    return datetime.fromtimestamp(millis / 1000).strftime("%Y-%m-%d %H:%M:%S")


def run_forever(
    orchestrator: LoginOrchestrator, store: JsonFileStore, stop: Optional[threading.Event] = None
) -> int:
    if stop is None:
        stop = threading.Event()

        def request_stop(signum, _frame) -> None:
            logger.info("Received signal %s, stopping", signum)
            stop.set()

        signal.signal(signal.SIGINT, request_stop)
        signal.signal(signal.SIGTERM, request_stop)

    orchestrator.start()
    waited = 0
    while not stop.wait(STORE_POLL_INTERVAL):
        waited += STORE_POLL_INTERVAL
        try:
            changed = store.refresh()
        except AutoLoginError as exc:
            logger.error("Failed to reload state file: %s", exc)
            changed = set()

        if SALT_KEY in changed:
            orchestrator.vault.invalidate()
        if PAUSED_KEY in changed:
            orchestrator.set_paused(orchestrator.paused)
        if CREDENTIALS_KEY in changed:
            orchestrator.credentials_updated()

        if waited >= CHECK_INTERVAL:
            waited = 0
            orchestrator.tick()

    orchestrator.stop()
    orchestrator.state_store.clear_snapshot()
    logger.info("Auto-login stopped")
    return 0


def cmd_status(orchestrator: LoginOrchestrator) -> int:
    state = orchestrator.state_store.load()
    # volatile fields are only known while the daemon is running
    snapshot = orchestrator.store.get(SNAPSHOT_KEY)
    if snapshot:
        print(f"Status:          {snapshot.get('status')}")
        if snapshot.get("lastError"):
            print(f"Last error:      {snapshot['lastError']}")
        if snapshot.get("retryCount"):
            print(f"Retry:           {snapshot['retryCount']}")
    else:
        print("Status:          daemon not running")
    print(f"Paused:          {'yes' if orchestrator.paused else 'no'}")
    print(f"Credentials:     {'stored' if orchestrator.vault.has_credentials() else 'not configured'}")
    print(f"Last login:      {format_timestamp(state.last_login_at)}")
    print(f"Next renewal:    {format_timestamp(state.next_renew_at)}")
    print(f"Session timeout: {state.session_timeout}s")
    return 0


def cmd_set_credentials(orchestrator: LoginOrchestrator, username: Optional[str]) -> int:
    username = username or input("Username: ")
    password = getpass.getpass("Password: ")
    username = validate_credentials(username, password)
    if " " in username:
        print("WARNING: Username contains spaces.")
    orchestrator.vault.save_credentials(username, password)
    print("DONE: Credentials encrypted and saved.")
    return 0


def cmd_cycle(orchestrator: LoginOrchestrator, force: bool) -> int:
    orchestrator.state_store.load()
    if force:
        orchestrator.force_login()
    else:
        orchestrator.run_cycle()
    orchestrator.stop()
    state = orchestrator.state
    if state.is_connected:
        print("DONE: You are online!")
        return 0
    print(f"WARNING: {state.status.value}: {state.last_error or 'not connected'}")
    return 1


def cmd_logs(orchestrator: LoginOrchestrator, clear: bool) -> int:
    if clear:
        response = orchestrator.handle_message({"type": "clear-debug-logs"})
        return 0 if response.get("success") else 1
    for entry in orchestrator.handle_message({"type": "get-debug-logs"})["logs"]:
        data = f" {json.dumps(entry['data'])}" if entry.get("data") is not None else ""
        print(f"[{entry['timestamp']}] [{entry['level'].upper()}] {entry['message']}{data}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Automatic IITG captive-portal login")
    parser.add_argument("--state-file", type=Path, default=STATE_FILE, help="JSON file holding state and credentials")
    parser.add_argument("--log-dir", type=Path, default=LOG_DIR)
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="keep the device logged in (runs until interrupted)")
    commands.add_parser("check", help="run a single connectivity check and log in when needed")
    commands.add_parser("login", help="log in now, skipping the connectivity check")
    commands.add_parser("status", help="show the current state")
    set_credentials = commands.add_parser("set-credentials", help="encrypt and store the portal credentials")
    set_credentials.add_argument("--username")
    commands.add_parser("clear-credentials", help="erase the stored credentials and salt")
    commands.add_parser("self-test", help="verify that encryption works on this device")
    commands.add_parser("pause", help="pause automatic login")
    commands.add_parser("resume", help="resume automatic login")
    logs = commands.add_parser("logs", help="show recent debug logs")
    logs.add_argument("--clear", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    store = JsonFileStore(args.state_file)
    setup_logging(args.log_dir, args.log_level, store=store)
    orchestrator = build_orchestrator(store, publish_state=args.command == "run")

    try:
        if args.command == "run":
            return run_forever(orchestrator, store)
        if args.command == "check":
            return cmd_cycle(orchestrator, force=False)
        if args.command == "login":
            return cmd_cycle(orchestrator, force=True)
        if args.command == "status":
            return cmd_status(orchestrator)
        if args.command == "set-credentials":
            return cmd_set_credentials(orchestrator, args.username)
        if args.command == "clear-credentials":
            orchestrator.vault.clear_stored_data()
            print("DONE: Stored credentials cleared.")
            return 0
        if args.command == "self-test":
            passed = orchestrator.vault.test_encryption()
            print(f"Encryption test: {'PASSED' if passed else 'FAILED'}")
            return 0 if passed else 1
        if args.command in ("pause", "resume"):
            orchestrator.store.set({PAUSED_KEY: args.command == "pause"})
            print(f"DONE: Auto-login {args.command}d.")
            return 0
        if args.command == "logs":
            return cmd_logs(orchestrator, args.clear)
    except AutoLoginError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
