"""Append-only audit trail for block decisions and administrative actions.

Entries are newline-delimited JSON in ``<log_dir>/audit.log``. The directory
comes from ``GuardSettings.audit_log_dir`` and defaults to ``logs/`` at the
project root. Writers to the same file share one module-level lock.
"""
import json
import threading
from datetime import datetime, timezone
from pathlib import Path

_LOCK = threading.Lock()

ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_LOG_DIR = ROOT / "logs"


class AuditLog:
    """Callable audit sink: ``audit(action, subject, payload)``."""

    def __init__(self, log_dir: str | Path | None = None):
        self._log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
        self._log_file = self._log_dir / "audit.log"

    @property
    def log_file(self) -> Path:
        return self._log_file

    def __call__(self, action: str, subject: str | None, payload: dict | None = None) -> None:
        """Append one entry. ``subject`` is the affected (masked) identifier, if any."""
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "subject": subject,
            "payload": payload or {},
        }
        line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
        with _LOCK:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a", encoding="utf-8") as f:
                f.write(line)
