"""Folds scored verdicts into the daily attendance ledger."""
import logging
import sqlite3
from typing import Optional

from room_inspection.config import rules
from room_inspection.storage.sqlite_store import InspectionStore
from room_inspection.types import AttendanceEntry, AttendanceStatus, LedgerStatistics, ScoreVerdict, VerdictStatus

logger = logging.getLogger(__name__)


def attendance_status(verdict: ScoreVerdict) -> AttendanceStatus:
    return AttendanceStatus.PASS if verdict.status == VerdictStatus.PASS else AttendanceStatus.FAIL


class AttendanceSynchronizer:
    """Marks a ledger entry as submitted once a verdict has a score.

    The entry is only ever updated, never created: opening a day's ledger is
    an administrative step. Re-delivering the same verdict writes the same
    values (the submission time comes from the verdict, not from the clock).
    """

    def __init__(self, store: InspectionStore):
        self.store = store

    def sync(self, verdict: ScoreVerdict) -> Optional[LedgerStatistics]:
        updated = self.store.mark_submitted(
            verdict.inspection_date,
            verdict.occupant_id,
            verdict.submitted_at,
            verdict.numeric_score,
            attendance_status(verdict),
        )
        return self.report(verdict, updated)

    def report(self, verdict: ScoreVerdict, updated: bool) -> Optional[LedgerStatistics]:
        """Log the outcome of a ledger update along with the day's statistics.

        Runs after the update has committed, so a failure to read the
        statistics is logged and does not undo anything.
        """
        day = verdict.inspection_date.isoformat()
        if not updated:
            logger.warning(
                f"No attendance entry for {verdict.occupant_id} on {day}; ledger not opened for that day"
            )
            return None

        try:
            stats = self.store.ledger_statistics(verdict.inspection_date)
        except sqlite3.Error as e:
            logger.warning(f"Attendance {day}: {verdict.occupant_id} marked, statistics unavailable: {e}")
            return None
        logger.info(
            f"Attendance {day}: {verdict.occupant_id} -> {attendance_status(verdict).value} "
            f"({stats.submitted}/{stats.total} submitted, {stats.submission_rate:.1f}%)"
        )
        return stats

    def update_entry(
        self,
        entry_id: int,
        is_submitted: Optional[bool] = None,
        score: Optional[int] = None,
        status: Optional[AttendanceStatus] = None,
        notes: Optional[str] = None,
    ) -> AttendanceEntry:
        """Administrator edit of a single ledger entry."""
        if is_submitted is None and score is None and status is None and notes is None:
            raise ValueError("Nothing to update")
        if score is not None and not rules.MIN_SCORE <= score <= rules.MAX_SCORE:
            raise ValueError(f"Score must be between {rules.MIN_SCORE} and {rules.MAX_SCORE}")
        entry = self.store.update_entry(entry_id, is_submitted, score, status, notes)
        logger.info(
            f"Attendance entry {entry_id} edited: submitted={entry.is_submitted} "
            f"score={entry.score} status={entry.status.value}"
        )
        return entry
