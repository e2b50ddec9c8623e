"""Startup helpers for database migrations and readiness tracking."""

from __future__ import annotations

import os
import subprocess
import threading
import time
from typing import Final

import structlog
from structlog.stdlib import BoundLogger

_MAX_ATTEMPTS: Final[int] = int(os.getenv("ALEMBIC_STARTUP_MAX_ATTEMPTS", "10"))
_RETRY_DELAY_SECONDS: Final[float] = float(os.getenv("ALEMBIC_STARTUP_RETRY_SECONDS", "2"))
_COMMAND: Final[tuple[str, ...]] = ("alembic", "upgrade", "head")


class MigrationRunner:
    """Runs ``alembic upgrade head`` once and remembers the outcome for /readyz.

    In prod a failed upgrade stops the process; elsewhere the upgrade runs in
    a daemon thread and readiness stays false until it succeeds.
    """

    def __init__(
        self,
        *,
        exit_on_failure: bool = False,
        max_attempts: int = _MAX_ATTEMPTS,
        retry_delay_seconds: float = _RETRY_DELAY_SECONDS,
    ) -> None:
        self._exit_on_failure = exit_on_failure
        self._max_attempts = max_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._completed = False
        self._error: str | None = None
        self._worker: threading.Thread | None = None
        self._logger = structlog.get_logger(__name__)

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def error(self) -> str | None:
        return self._error

    def mark_completed(self, reason: str) -> None:
        self._completed = True
        self._error = None
        self._logger.info("alembic_upgrade_skipped", reason=reason)

    def start(self) -> None:
        if self._completed:
            self._logger.info("alembic_upgrade_skipped", reason="already_completed")
            return

        if self._exit_on_failure:
            self._record(*self._run(self._logger))
            if not self._completed:
                raise SystemExit(1)
            return

        if self._worker and self._worker.is_alive():
            self._logger.info("alembic_upgrade_skipped", reason="already_running")
            return

        self._worker = threading.Thread(
            target=self._run_in_background, name="alembic-startup", daemon=True
        )
        self._worker.start()
        self._logger.info("alembic_upgrade_background_started")

    def _record(self, success: bool, error: str | None) -> None:
        self._completed = success
        self._error = None if success else error

    def _run_in_background(self) -> None:
        self._record(*self._run(self._logger.bind(mode="async")))

    def _run(self, logger: BoundLogger) -> tuple[bool, str | None]:
        last_error: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                logger.info("alembic_upgrade_start", attempt=attempt)
                subprocess.run(_COMMAND, check=True)
            except FileNotFoundError:
                logger.error("alembic_command_missing", command=" ".join(_COMMAND))
                return False, "alembic command not found"
            except subprocess.CalledProcessError as exc:
                last_error = f"alembic exited with return code {exc.returncode}"
                logger.error("alembic_upgrade_failed", attempt=attempt, returncode=exc.returncode)
            else:
                logger.info("alembic_upgrade_succeeded", attempt=attempt)
                return True, None

            if attempt < self._max_attempts:
                delay = self._retry_delay_seconds * attempt
                logger.info("alembic_upgrade_retry", next_attempt=attempt + 1, delay_seconds=delay)
                time.sleep(delay)

        logger.error("alembic_upgrade_exhausted", attempts=self._max_attempts)
        return False, last_error or "alembic upgrade failed"


__all__ = ["MigrationRunner"]
