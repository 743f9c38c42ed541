"""
Progress tracking for running imports.

ProgressTracker keeps per-phase counters and turns them into
ImportProgress snapshots (percent complete, elapsed time, ETA).
Snapshots are pushed to a ProgressSink.
"""
from __future__ import annotations
import threading
import time
from typing import Optional, Protocol
from loguru import logger

from .models import BatchStatus, ImportProgress, PhaseProgress
from .models.batch import utcnow

PHASE_MASTERS = "masters"
PHASE_OPENING_BALANCES = "opening_balances"
PHASE_VOUCHERS = "vouchers"
PHASES = (PHASE_MASTERS, PHASE_OPENING_BALANCES, PHASE_VOUCHERS)


class ProgressSink(Protocol):
    def publish(self, batch_id: str, snapshot: ImportProgress) -> None: ...


class LoggingProgressSink:
    """Writes each snapshot to the log."""

    def publish(self, batch_id: str, snapshot: ImportProgress) -> None:
        eta = (
            f", ~{snapshot.estimated_remaining_seconds:.0f}s left"
            if snapshot.estimated_remaining_seconds is not None
            else ""
        )
        logger.info(
            f"Batch {batch_id}: {snapshot.current_phase or '-'} "
            f"{snapshot.percent_complete:.1f}% ({snapshot.elapsed_seconds:.0f}s elapsed{eta})"
        )


class ProgressTracker:
    def __init__(self, batch_id: str, totals: dict[str, int]):
        self.batch_id = batch_id
        self.phases = {phase: PhaseProgress(total=totals.get(phase, 0)) for phase in PHASES}
        self.current_phase: Optional[str] = None
        self.current_item: Optional[str] = None
        self.last_error: Optional[str] = None
        self.started_at = utcnow()
        self._started = time.monotonic()
        self._lock = threading.Lock()

    def begin_phase(self, phase: str):
        with self._lock:
            self.current_phase = phase

    def record(self, phase: str, succeeded: bool, item: Optional[str] = None, error: Optional[str] = None):
        with self._lock:
            progress = self.phases[phase]
            progress.processed += 1
            if succeeded:
                progress.succeeded += 1
            else:
                progress.failed += 1
            self.current_item = item
            if error:
                self.last_error = error

    @property
    def processed(self) -> int:
        return sum(p.processed for p in self.phases.values())

    @property
    def total(self) -> int:
        return sum(p.total for p in self.phases.values())

    def percent_complete(self) -> float:
        total = self.total
        if total == 0:
            return 0.0
        return min(100.0, self.processed * 100.0 / total)

    def snapshot(self, status: BatchStatus) -> ImportProgress:
        with self._lock:
            elapsed = time.monotonic() - self._started
            percent = self.percent_complete()
            remaining = None
            if 0 < percent < 100:
                remaining = elapsed * 100.0 / percent - elapsed
            elif percent >= 100:
                remaining = 0.0
            return ImportProgress(
                batch_id=self.batch_id,
                status=status,
                current_phase=self.current_phase,
                phases={name: p.model_copy() for name, p in self.phases.items()},
                percent_complete=round(percent, 2),
                current_item=self.current_item,
                last_error=self.last_error,
                started_at=self.started_at,
                elapsed_seconds=round(elapsed, 3),
                estimated_remaining_seconds=None if remaining is None else round(remaining, 3),
            )
