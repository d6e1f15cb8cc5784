import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from autologin_state import KeyValueStore

DEBUG_LOGS_KEY = "debugLogs"
MAX_DEBUG_LOGS = 100


class StoreLogHandler(logging.Handler):
    """Keeps the most recent records in the key-value store for the ``get-debug-logs`` request."""

    def __init__(self, store: KeyValueStore, capacity: int = MAX_DEBUG_LOGS) -> None:
        super().__init__()
        self.store = store
        self.capacity = capacity
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        # Writing to the store may log again.
        if getattr(self._local, "busy", False):
            return
        self._local.busy = True
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname.lower(),
                "message": record.getMessage(),
                "data": getattr(record, "data", None),
            }
            logs = list(self.store.get(DEBUG_LOGS_KEY) or [])
            logs.append(entry)
            self.store.set({DEBUG_LOGS_KEY: logs[-self.capacity:]})
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False


def setup_logging(log_dir: Path, log_level: str = "INFO", store: Optional[KeyValueStore] = None) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{datetime.now():%Y-%m-%d}.log"

    handlers = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    if store is not None:
        store_handler = StoreLogHandler(store)
        store_handler.setLevel(logging.DEBUG)
        handlers.append(store_handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
