# backend/showmover/guard.py
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from .config import Config
from .errors import MoveBlockedByScan, ScanAlreadyRunning, ScanBlockedByJobs
from .jobs import has_active_jobs
from .models import utcnow
from .scanner import ScanSummary, run_scan

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class ScanStatus:
    state: ScanState = ScanState.IDLE
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None


class AdmissionGuard:
    """
    Keeps scans and moves from starting while the other is active.

    The check happens once, when a scan or a move is requested. Nothing is
    held while the scan or the move job runs, so a move admitted just before
    a scan starts is not stopped by it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._status = ScanStatus()

    def status(self) -> ScanStatus:
        with self._lock:
            return self._status

    def begin_scan(self, session: Session):
        with self._lock:
            if has_active_jobs(session):
                raise ScanBlockedByJobs()
            if self._status.state == ScanState.RUNNING:
                raise ScanAlreadyRunning()
            self._status = replace(
                self._status, state=ScanState.RUNNING, last_started=utcnow(), last_error=None
            )

    def finish_scan(self, error: Optional[str] = None):
        with self._lock:
            self._status = replace(
                self._status, state=ScanState.IDLE, last_finished=utcnow(), last_error=error
            )

    def ensure_move_allowed(self):
        with self._lock:
            if self._status.state == ScanState.RUNNING:
                raise MoveBlockedByScan()

    def run_scan(self, engine: Engine, config: Config) -> Optional[ScanSummary]:
        """Run a scan admitted by begin_scan and record how it ended."""
        try:
            summary = run_scan(engine, config)
        except Exception as e:
            logger.exception("Filesystem scan failed")
            self.finish_scan(str(e) or repr(e))
            return None
        self.finish_scan()
        logger.info(
            "Filesystem scan finished: scanned=%d processed=%d inserted=%d updated=%d",
            summary.scanned_libraries, summary.shows_processed, summary.inserted, summary.updated,
        )
        return summary
