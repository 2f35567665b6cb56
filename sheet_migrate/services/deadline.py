from __future__ import annotations

import logging
import threading
from typing import Any

from ..db.dialect import Dialect
from ..errors import StepTimeoutError

"""Statement deadline for long-running steps.

A ``threading.Timer`` cancels the in-flight statement on the step's
connection when the budget runs out (``conn.cancel()`` on PostgreSQL,
``conn.interrupt()`` on SQLite). The driver error raised by the cancelled
statement is converted to ``StepTimeoutError``.
"""

__all__ = [
    "StatementDeadline",
]

logger = logging.getLogger(__name__)


class StatementDeadline:
    """Context manager: ``with StatementDeadline(conn, dialect, 300, "promote_valid"): ...``"""

    def __init__(self, conn: Any, dialect: Dialect, seconds: float | None, step: str) -> None:
        self.conn = conn
        self.dialect = dialect
        self.seconds = seconds
        self.step = step
        self.expired = False
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._active = False

    def _fire(self) -> None:
        with self._lock:
            if not self._active:
                return
            self.expired = True
        logger.warning(f"step '{self.step}' exceeded {self.seconds:g}s, cancelling statement")
        try:
            self.dialect.cancel(self.conn)
        except Exception as e:  # pragma: no cover - driver specific
            logger.error(f"cancel failed for step '{self.step}': {e}")

    def __enter__(self) -> StatementDeadline:
        if self.seconds is not None and self.seconds > 0:
            self._active = True
            self._timer = threading.Timer(self.seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> bool:
        with self._lock:
            self._active = False
        if self._timer is not None:
            self._timer.cancel()
        if self.expired and isinstance(exc, Exception):
            raise StepTimeoutError(self.step, self.seconds or 0.0) from exc
        return False
