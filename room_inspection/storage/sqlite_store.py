"""SQLite persistence for admission configs, submissions and attendance ledgers."""
import io
import json
import logging
import sqlite3
import threading
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterable, List, Optional

import pandas as pd

from room_inspection.types import (
    AdmissionWindowConfig,
    AttendanceEntry,
    AttendanceEntryNotFoundError,
    AttendanceStatus,
    Decision,
    DuplicateSubmissionError,
    ForensicReport,
    InspectionStatistics,
    LedgerExistsError,
    LedgerNotFoundError,
    LedgerStatistics,
    RoomTemplate,
    RosterMember,
    ScoreVerdict,
    SubmissionNotFoundError,
    VerdictStatus,
    format_weekdays,
    parse_weekdays,
)

logger = logging.getLogger(__name__)

RESERVED = "RESERVED"
COMPLETED = "COMPLETED"

EXPORT_FORMATS = ("csv", "json", "xlsx")

LEDGER_COLUMNS = [
    "room_identifier",
    "occupant_id",
    "occupant_name",
    "is_submitted",
    "submission_time",
    "score",
    "status",
    "notes",
]


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: str) -> time:
    return time.fromisoformat(value)


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class InspectionStore:
    """All pipeline state in one SQLite file.

    Each operation opens its own connection, so the store can be shared
    across request threads. Uniqueness of ``(occupant_id, inspection_date)``
    in ``submissions`` is what makes the duplicate check atomic.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._config_lock = threading.Lock()

    def connect_db(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def create_tables(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect_db()
        try:
            cursor = conn.cursor()

            cursor.execute("""
            CREATE TABLE IF NOT EXISTS admission_configs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                start_time TEXT NOT NULL,            -- HH:MM[:SS]
                end_time TEXT NOT NULL,
                specific_date TEXT,                  -- YYYY-MM-DD
                recurring_weekdays TEXT NOT NULL DEFAULT 'ALL',
                enabled INTEGER NOT NULL DEFAULT 1,
                is_default INTEGER NOT NULL DEFAULT 0,
                forensics_enabled INTEGER NOT NULL DEFAULT 1,
                time_tolerance_minutes INTEGER NOT NULL DEFAULT 10,
                geofence_enabled INTEGER NOT NULL DEFAULT 0,
                reference_latitude REAL,
                reference_longitude REAL,
                geofence_radius_meters INTEGER NOT NULL DEFAULT 100,
                photo_content_check_enabled INTEGER NOT NULL DEFAULT 1,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """)

            cursor.execute("""
            CREATE TABLE IF NOT EXISTS submissions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                occupant_id TEXT NOT NULL,
                room_identifier TEXT NOT NULL,
                inspection_date TEXT NOT NULL,       -- YYYY-MM-DD in the pipeline zone
                submitted_at TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'RESERVED',
                numeric_score INTEGER,
                base_score INTEGER,
                status TEXT,
                feedback_text TEXT,
                forensic_penalty_applied INTEGER NOT NULL DEFAULT 0,
                used_fallback INTEGER NOT NULL DEFAULT 0,
                reasons TEXT,                        -- JSON list
                forensics TEXT,                      -- JSON object
                image_blob_ref TEXT,
                admin_comment TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(occupant_id, inspection_date)
            )
            """)

            cursor.execute("""
            CREATE TABLE IF NOT EXISTS attendance_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                inspection_date TEXT NOT NULL,
                occupant_id TEXT NOT NULL,
                occupant_name TEXT,
                room_identifier TEXT NOT NULL,
                is_submitted INTEGER NOT NULL DEFAULT 0,
                submission_time TEXT,
                score INTEGER,
                status TEXT NOT NULL DEFAULT 'PENDING',
                notes TEXT,
                UNIQUE(inspection_date, occupant_id)
            )
            """)

            cursor.execute("""
            CREATE TABLE IF NOT EXISTS room_templates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                room_type TEXT NOT NULL,             -- SINGLE / DOUBLE / MULTI
                building TEXT,                       -- NULL applies to every building
                description TEXT,
                image_blob_ref TEXT NOT NULL,
                is_default INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """)

            conn.commit()
        finally:
            conn.close()
        logger.info(f"Database ready at {self.db_path}")

    # -----------------------------
    # Admission configs
    # -----------------------------
    @staticmethod
    def _row_to_config(row: sqlite3.Row) -> AdmissionWindowConfig:
        return AdmissionWindowConfig(
            id=row["id"],
            name=row["name"],
            start_time=_parse_time(row["start_time"]),
            end_time=_parse_time(row["end_time"]),
            specific_date=_parse_date(row["specific_date"]),
            recurring_weekdays=parse_weekdays(row["recurring_weekdays"]),
            enabled=bool(row["enabled"]),
            is_default=bool(row["is_default"]),
            forensics_enabled=bool(row["forensics_enabled"]),
            time_tolerance_minutes=row["time_tolerance_minutes"],
            geofence_enabled=bool(row["geofence_enabled"]),
            reference_latitude=row["reference_latitude"],
            reference_longitude=row["reference_longitude"],
            geofence_radius_meters=row["geofence_radius_meters"],
            photo_content_check_enabled=bool(row["photo_content_check_enabled"]),
        )

    def list_configs(self) -> List[AdmissionWindowConfig]:
        conn = self.connect_db()
        try:
            rows = conn.execute("SELECT * FROM admission_configs ORDER BY id").fetchall()
        finally:
            conn.close()
        return [self._row_to_config(row) for row in rows]

    def get_config(self, config_id: int) -> Optional[AdmissionWindowConfig]:
        conn = self.connect_db()
        try:
            row = conn.execute("SELECT * FROM admission_configs WHERE id = ?", (config_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_config(row) if row else None

    def save_config(self, config: AdmissionWindowConfig) -> AdmissionWindowConfig:
        """Insert or update a config. Saving a default clears every other default."""
        values = (
            config.name,
            config.start_time.isoformat(),
            config.end_time.isoformat(),
            _iso(config.specific_date),
            format_weekdays(config.recurring_weekdays),
            int(config.enabled),
            int(config.is_default),
            int(config.forensics_enabled),
            config.time_tolerance_minutes,
            int(config.geofence_enabled),
            config.reference_latitude,
            config.reference_longitude,
            config.geofence_radius_meters,
            int(config.photo_content_check_enabled),
        )
        with self._config_lock:
            conn = self.connect_db()
            try:
                cur = conn.cursor()
                cur.execute("BEGIN IMMEDIATE")
                if config.is_default:
                    cur.execute(
                        "UPDATE admission_configs SET is_default = 0 WHERE is_default = 1 AND id IS NOT ?",
                        (config.id,),
                    )
                if config.id is None:
                    cur.execute(
                        """
                        INSERT INTO admission_configs (
                            name, start_time, end_time, specific_date, recurring_weekdays,
                            enabled, is_default, forensics_enabled, time_tolerance_minutes,
                            geofence_enabled, reference_latitude, reference_longitude,
                            geofence_radius_meters, photo_content_check_enabled
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        values,
                    )
                    config.id = cur.lastrowid
                else:
                    cur.execute(
                        """
                        UPDATE admission_configs
                        SET name = ?, start_time = ?, end_time = ?, specific_date = ?,
                            recurring_weekdays = ?, enabled = ?, is_default = ?,
                            forensics_enabled = ?, time_tolerance_minutes = ?,
                            geofence_enabled = ?, reference_latitude = ?, reference_longitude = ?,
                            geofence_radius_meters = ?, photo_content_check_enabled = ?,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE id = ?
                        """,
                        values + (config.id,),
                    )
                    if cur.rowcount == 0:
                        raise KeyError(f"Admission config {config.id} not found")
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        logger.info(f"Saved admission config '{config.name}' (id={config.id}, default={config.is_default})")
        return config

    def ensure_default_config(self, factory) -> AdmissionWindowConfig:
        """Create the bootstrap default config when no default exists yet."""
        for config in self.list_configs():
            if config.is_default:
                return config
        config = factory()
        logger.info(f"No default admission config found, creating '{config.name}'")
        return self.save_config(config)

    # -----------------------------
    # Submissions
    # -----------------------------
    def reserve_submission(
        self,
        occupant_id: str,
        room_identifier: str,
        inspection_date: date,
        submitted_at: datetime,
    ) -> int:
        """Claim the (occupant, date) slot. Raises DuplicateSubmissionError if taken."""
        conn = self.connect_db()
        try:
            cur = conn.execute(
                """
                INSERT INTO submissions (occupant_id, room_identifier, inspection_date, submitted_at, state)
                VALUES (?, ?, ?, ?, ?)
                """,
                (occupant_id, room_identifier, inspection_date.isoformat(), submitted_at.isoformat(), RESERVED),
            )
            conn.commit()
            return int(cur.lastrowid)
        except sqlite3.IntegrityError as e:
            raise DuplicateSubmissionError(
                f"{occupant_id} already has a submission for {inspection_date.isoformat()}"
            ) from e
        finally:
            conn.close()

    def release_submission(self, submission_id: int):
        """Drop a reservation that never produced a stored verdict."""
        conn = self.connect_db()
        try:
            conn.execute("DELETE FROM submissions WHERE id = ? AND state = ?", (submission_id, RESERVED))
            conn.commit()
        finally:
            conn.close()

    def discard_submission(self, submission_id: int):
        """Delete a submission row whatever its state. Used to undo a failed save."""
        conn = self.connect_db()
        try:
            conn.execute("DELETE FROM submissions WHERE id = ?", (submission_id,))
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Could not discard submission {submission_id}: {e}")
        finally:
            conn.close()

    def complete_submission(
        self,
        submission_id: int,
        verdict: ScoreVerdict,
        attendance_status: Optional[AttendanceStatus] = None,
    ) -> bool:
        """Write the verdict onto its reservation and mark the ledger in one transaction.

        Returns True when a ledger entry was marked. With ``attendance_status``
        left as None the ledger is not touched.
        """
        conn = self.connect_db()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                UPDATE submissions
                SET state = ?, numeric_score = ?, base_score = ?, status = ?, feedback_text = ?,
                    forensic_penalty_applied = ?, used_fallback = ?, reasons = ?, forensics = ?,
                    image_blob_ref = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND state = ?
                """,
                (
                    COMPLETED,
                    verdict.numeric_score,
                    verdict.base_score,
                    verdict.status.value,
                    verdict.feedback_text,
                    int(verdict.forensic_penalty_applied),
                    int(verdict.used_fallback),
                    json.dumps(verdict.reasons, ensure_ascii=False),
                    json.dumps(verdict.forensics.to_dict()) if verdict.forensics else None,
                    verdict.image_blob_ref,
                    submission_id,
                    RESERVED,
                ),
            )
            if cur.rowcount != 1:
                raise sqlite3.OperationalError(f"Reservation {submission_id} is missing or already completed")
            marked = False
            if attendance_status is not None:
                marked = self._mark_entry(
                    cur,
                    verdict.inspection_date,
                    verdict.occupant_id,
                    verdict.submitted_at,
                    verdict.numeric_score,
                    attendance_status,
                )
            conn.commit()
            return marked
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_verdict(row: sqlite3.Row) -> ScoreVerdict:
        forensics = ForensicReport.from_dict(json.loads(row["forensics"])) if row["forensics"] else None
        return ScoreVerdict(
            submission_id=row["id"],
            occupant_id=row["occupant_id"],
            room_identifier=row["room_identifier"],
            inspection_date=_parse_date(row["inspection_date"]),
            submitted_at=_parse_datetime(row["submitted_at"]),
            decision=Decision.ACCEPTED,
            numeric_score=row["numeric_score"] or 0,
            base_score=row["base_score"],
            status=VerdictStatus(row["status"]) if row["status"] else VerdictStatus.FAIL,
            feedback_text=row["feedback_text"] or "",
            forensic_penalty_applied=bool(row["forensic_penalty_applied"]),
            used_fallback=bool(row["used_fallback"]),
            reasons=json.loads(row["reasons"]) if row["reasons"] else [],
            forensics=forensics,
            image_blob_ref=row["image_blob_ref"],
            admin_comment=row["admin_comment"],
        )

    def get_submission(self, submission_id: int) -> ScoreVerdict:
        conn = self.connect_db()
        try:
            row = conn.execute(
                "SELECT * FROM submissions WHERE id = ? AND state = ?", (submission_id, COMPLETED)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise SubmissionNotFoundError(f"Submission {submission_id} not found")
        return self._row_to_verdict(row)

    def find_submission(self, occupant_id: str, inspection_date: date) -> Optional[ScoreVerdict]:
        conn = self.connect_db()
        try:
            row = conn.execute(
                "SELECT * FROM submissions WHERE occupant_id = ? AND inspection_date = ? AND state = ?",
                (occupant_id, inspection_date.isoformat(), COMPLETED),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_verdict(row) if row else None

    def list_submissions(self, inspection_date: date) -> List[ScoreVerdict]:
        """Stored verdicts for a day, oldest submission first."""
        conn = self.connect_db()
        try:
            rows = conn.execute(
                """
                SELECT * FROM submissions
                WHERE inspection_date = ? AND state = ?
                ORDER BY submitted_at, id
                """,
                (inspection_date.isoformat(), COMPLETED),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_verdict(row) for row in rows]

    def submission_statistics(self, inspection_date: date) -> InspectionStatistics:
        conn = self.connect_db()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS passed,
                       AVG(numeric_score) AS average_score
                FROM submissions
                WHERE inspection_date = ? AND state = ?
                """,
                (VerdictStatus.PASS.value, inspection_date.isoformat(), COMPLETED),
            ).fetchone()
        finally:
            conn.close()
        total = int(row["total"])
        passed = int(row["passed"])
        average = round(row["average_score"], 1) if row["average_score"] is not None else None
        return InspectionStatistics(
            inspection_date=inspection_date,
            total=total,
            passed=passed,
            failed=total - passed,
            average_score=average,
        )

    def update_submission_review(
        self,
        submission_id: int,
        numeric_score: Optional[int] = None,
        status: Optional[VerdictStatus] = None,
        admin_comment: Optional[str] = None,
    ) -> ScoreVerdict:
        """Apply an administrator's score/status override and/or comment."""
        conn = self.connect_db()
        try:
            cur = conn.execute(
                """
                UPDATE submissions
                SET numeric_score = COALESCE(?, numeric_score),
                    status = COALESCE(?, status),
                    admin_comment = COALESCE(?, admin_comment),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND state = ?
                """,
                (numeric_score, status.value if status else None, admin_comment, submission_id, COMPLETED),
            )
            if cur.rowcount == 0:
                raise SubmissionNotFoundError(f"Submission {submission_id} not found")
            conn.commit()
        finally:
            conn.close()
        return self.get_submission(submission_id)

    def reject_submission(self, submission_id: int, note: str) -> ScoreVerdict:
        """Delete a stored verdict and put its ledger entry back to PENDING.

        Both changes commit together. The occupant's slot for the day is free
        again afterwards. Returns the verdict as it was before deletion.
        """
        conn = self.connect_db()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            row = cur.execute(
                "SELECT * FROM submissions WHERE id = ? AND state = ?", (submission_id, COMPLETED)
            ).fetchone()
            if row is None:
                raise SubmissionNotFoundError(f"Submission {submission_id} not found")
            verdict = self._row_to_verdict(row)
            cur.execute("DELETE FROM submissions WHERE id = ?", (submission_id,))
            cur.execute(
                """
                UPDATE attendance_entries
                SET is_submitted = 0, submission_time = NULL, score = NULL, status = ?, notes = ?
                WHERE inspection_date = ? AND occupant_id = ?
                """,
                (
                    AttendanceStatus.PENDING.value,
                    note,
                    verdict.inspection_date.isoformat(),
                    verdict.occupant_id,
                ),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return verdict

    # -----------------------------
    # Attendance ledger
    # -----------------------------
    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AttendanceEntry:
        return AttendanceEntry(
            id=row["id"],
            inspection_date=_parse_date(row["inspection_date"]),
            occupant_id=row["occupant_id"],
            occupant_name=row["occupant_name"],
            room_identifier=row["room_identifier"],
            is_submitted=bool(row["is_submitted"]),
            submission_time=_parse_datetime(row["submission_time"]),
            score=row["score"],
            status=AttendanceStatus(row["status"]),
            notes=row["notes"],
        )

    def ledger_exists(self, inspection_date: date) -> bool:
        conn = self.connect_db()
        try:
            row = conn.execute(
                "SELECT 1 FROM attendance_entries WHERE inspection_date = ? LIMIT 1",
                (inspection_date.isoformat(),),
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def open_ledger(self, inspection_date: date, roster: Iterable[RosterMember]) -> int:
        """Create one PENDING entry per roster member for the day."""
        members = list(roster)
        conn = self.connect_db()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            exists = cur.execute(
                "SELECT 1 FROM attendance_entries WHERE inspection_date = ? LIMIT 1",
                (inspection_date.isoformat(),),
            ).fetchone()
            if exists:
                raise LedgerExistsError(f"Attendance ledger for {inspection_date.isoformat()} already exists")
            cur.executemany(
                """
                INSERT INTO attendance_entries (inspection_date, occupant_id, occupant_name, room_identifier, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        inspection_date.isoformat(),
                        member.occupant_id,
                        member.occupant_name,
                        member.room_identifier,
                        AttendanceStatus.PENDING.value,
                    )
                    for member in members
                ],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info(f"Opened attendance ledger for {inspection_date.isoformat()} with {len(members)} entries")
        return len(members)

    def get_ledger(self, inspection_date: date) -> List[AttendanceEntry]:
        conn = self.connect_db()
        try:
            rows = conn.execute(
                """
                SELECT * FROM attendance_entries
                WHERE inspection_date = ?
                ORDER BY room_identifier, occupant_id
                """,
                (inspection_date.isoformat(),),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows]

    def get_entry(self, inspection_date: date, occupant_id: str) -> Optional[AttendanceEntry]:
        conn = self.connect_db()
        try:
            row = conn.execute(
                "SELECT * FROM attendance_entries WHERE inspection_date = ? AND occupant_id = ?",
                (inspection_date.isoformat(), occupant_id),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    def delete_ledger(self, inspection_date: date) -> int:
        conn = self.connect_db()
        try:
            cur = conn.execute(
                "DELETE FROM attendance_entries WHERE inspection_date = ?",
                (inspection_date.isoformat(),),
            )
            conn.commit()
            deleted = cur.rowcount
        finally:
            conn.close()
        if deleted == 0:
            raise LedgerNotFoundError(f"No attendance ledger for {inspection_date.isoformat()}")
        logger.info(f"Deleted attendance ledger for {inspection_date.isoformat()} ({deleted} entries)")
        return deleted

    @staticmethod
    def _mark_entry(
        cur: sqlite3.Cursor,
        inspection_date: date,
        occupant_id: str,
        submission_time: datetime,
        score: int,
        status: AttendanceStatus,
    ) -> bool:
        cur.execute(
            """
            UPDATE attendance_entries
            SET is_submitted = 1, submission_time = ?, score = ?, status = ?
            WHERE inspection_date = ? AND occupant_id = ?
            """,
            (
                submission_time.isoformat(),
                score,
                status.value,
                inspection_date.isoformat(),
                occupant_id,
            ),
        )
        return cur.rowcount == 1

    def mark_submitted(
        self,
        inspection_date: date,
        occupant_id: str,
        submission_time: datetime,
        score: int,
        status: AttendanceStatus,
    ) -> bool:
        """Single-row update of an existing entry. Returns False when no entry exists."""
        conn = self.connect_db()
        try:
            updated = self._mark_entry(conn.cursor(), inspection_date, occupant_id, submission_time, score, status)
            conn.commit()
            return updated
        finally:
            conn.close()

    def update_entry(
        self,
        entry_id: int,
        is_submitted: Optional[bool] = None,
        score: Optional[int] = None,
        status: Optional[AttendanceStatus] = None,
        notes: Optional[str] = None,
    ) -> AttendanceEntry:
        """Manual correction of one ledger entry; None leaves a field unchanged."""
        conn = self.connect_db()
        try:
            cur = conn.execute(
                """
                UPDATE attendance_entries
                SET is_submitted = COALESCE(?, is_submitted),
                    score = COALESCE(?, score),
                    status = COALESCE(?, status),
                    notes = COALESCE(?, notes)
                WHERE id = ?
                """,
                (
                    int(is_submitted) if is_submitted is not None else None,
                    score,
                    status.value if status else None,
                    notes,
                    entry_id,
                ),
            )
            if cur.rowcount == 0:
                raise AttendanceEntryNotFoundError(f"Attendance entry {entry_id} not found")
            conn.commit()
            row = conn.execute("SELECT * FROM attendance_entries WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row)

    def ledger_statistics(self, inspection_date: date) -> LedgerStatistics:
        conn = self.connect_db()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, COALESCE(SUM(is_submitted), 0) AS submitted
                FROM attendance_entries
                WHERE inspection_date = ?
                """,
                (inspection_date.isoformat(),),
            ).fetchone()
        finally:
            conn.close()
        total = int(row["total"])
        submitted = int(row["submitted"])
        rate = round(submitted * 100.0 / total, 1) if total else 0.0
        return LedgerStatistics(total=total, submitted=submitted, pending=total - submitted, submission_rate=rate)

    def ledger_dataframe(self, inspection_date: date) -> pd.DataFrame:
        entries = self.get_ledger(inspection_date)
        if not entries:
            raise LedgerNotFoundError(f"No attendance ledger for {inspection_date.isoformat()}")
        df = pd.DataFrame([entry.to_dict() for entry in entries])
        return df[LEDGER_COLUMNS]

    def export_ledger(self, inspection_date: date, export_format: str = "csv") -> bytes:
        """Serialize the day's ledger as csv, json or xlsx bytes."""
        export_format = export_format.lower()
        if export_format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {export_format}")
        df = self.ledger_dataframe(inspection_date)

        if export_format == "csv":
            # UTF-8 with BOM so spreadsheet apps pick up Korean names
            return df.to_csv(index=False).encode("utf-8-sig")
        if export_format == "json":
            return df.to_json(orient="records", force_ascii=False).encode("utf-8")

        output = io.BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            df.to_excel(writer, index=False, sheet_name=f"Attendance {inspection_date.isoformat()}")
        return output.getvalue()

    # -----------------------------
    # Reference room templates
    # -----------------------------
    @staticmethod
    def _row_to_template(row: sqlite3.Row) -> RoomTemplate:
        return RoomTemplate(
            id=row["id"],
            name=row["name"],
            room_type=row["room_type"],
            building=row["building"],
            description=row["description"],
            image_blob_ref=row["image_blob_ref"],
            is_default=bool(row["is_default"]),
            is_active=bool(row["is_active"]),
        )

    def save_template(self, template: RoomTemplate) -> RoomTemplate:
        """Insert a template. A new default replaces the previous default for its room type."""
        conn = self.connect_db()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            if template.is_default:
                cur.execute(
                    "UPDATE room_templates SET is_default = 0 WHERE room_type = ? AND is_default = 1",
                    (template.room_type,),
                )
            cur.execute(
                """
                INSERT INTO room_templates (name, room_type, building, description, image_blob_ref, is_default, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template.name,
                    template.room_type,
                    template.building,
                    template.description,
                    template.image_blob_ref,
                    int(template.is_default),
                    int(template.is_active),
                ),
            )
            template.id = cur.lastrowid
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info(f"Saved room template '{template.name}' (id={template.id}, type={template.room_type})")
        return template

    def list_templates(self, active_only: bool = False) -> List[RoomTemplate]:
        query = "SELECT * FROM room_templates"
        if active_only:
            query += " WHERE is_active = 1"
        conn = self.connect_db()
        try:
            rows = conn.execute(query + " ORDER BY room_type, id").fetchall()
        finally:
            conn.close()
        return [self._row_to_template(row) for row in rows]

    def find_template(self, room_type: str, building: Optional[str] = None) -> Optional[RoomTemplate]:
        """Active template for a building and room type, else the room type's default."""
        room_type = room_type.strip().upper()
        conn = self.connect_db()
        try:
            row = None
            if building:
                row = conn.execute(
                    """
                    SELECT * FROM room_templates
                    WHERE room_type = ? AND building = ? AND is_active = 1
                    ORDER BY is_default DESC, id
                    LIMIT 1
                    """,
                    (room_type, building),
                ).fetchone()
            if row is None:
                row = conn.execute(
                    """
                    SELECT * FROM room_templates
                    WHERE room_type = ? AND is_default = 1 AND is_active = 1
                    LIMIT 1
                    """,
                    (room_type,),
                ).fetchone()
        finally:
            conn.close()
        return self._row_to_template(row) if row else None
