"""Orchestration logic for room inspection submissions."""
import logging
import sqlite3
import threading
from datetime import date, datetime
from typing import List, Optional

from room_inspection.config import rules
from room_inspection.config.settings import PipelineSettings
from room_inspection.extractors.image_extractor import is_readable_image
from room_inspection.orchestration.attendance_sync import AttendanceSynchronizer, attendance_status
from room_inspection.storage.blob_store import LocalBlobStore
from room_inspection.storage.sqlite_store import InspectionStore
from room_inspection.types import (
    AdmissionWindowConfig,
    AttendanceEntry,
    AttendanceStatus,
    Decision,
    DuplicateSubmissionError,
    ForensicReport,
    GateResult,
    InspectionStatistics,
    InspectionSubmission,
    PersistenceError,
    RejectionCode,
    RoomTemplate,
    ScoreVerdict,
    ScoringResult,
    SubmissionCancelledError,
    VerdictStatus,
    normalize_room_type,
)
from room_inspection.utils.clock import Clock
from room_inspection.validators.admission_gate import AdmissionWindowGate, default_admission_config
from room_inspection.validators.forensic_validator import ForensicValidator
from room_inspection.validators.scoring_client import ScoringClient

logger = logging.getLogger(__name__)


def aggregate_score(
    result: ScoringResult,
    forensics: Optional[ForensicReport],
    pass_threshold: int = rules.PASS_THRESHOLD,
    penalty: int = rules.FORENSIC_PENALTY,
):
    """Combine the base score with forensic outcomes.

    Returns (final_score, status, penalty_applied, reasons). A stale capture
    date zeroes the score outright; any other failed check costs ``penalty``.
    """
    score = result.numeric_score
    reasons: List[str] = []
    penalty_applied = False

    if forensics is not None:
        if not forensics.date_valid:
            reasons.append("Photo was not taken today.")
        if not forensics.time_valid:
            drift = f" ({forensics.time_drift_minutes:.0f} min off)" if forensics.time_drift_minutes is not None else ""
            reasons.append(f"Photo capture time is outside the allowed tolerance{drift}.")
        if not forensics.location_valid:
            distance = f" ({forensics.distance_meters:.0f} m away)" if forensics.distance_meters is not None else ""
            reasons.append(f"Photo was taken outside the dormitory area{distance}.")
        if not forensics.not_edited:
            reasons.append(f"Photo was edited with {forensics.editing_software_tag}.")

        if not forensics.overall_valid:
            score = max(rules.MIN_SCORE, score - penalty)
            penalty_applied = True
        if not forensics.date_valid:
            score = rules.MIN_SCORE

    status = VerdictStatus.PASS if score >= pass_threshold else VerdictStatus.FAIL
    if status == VerdictStatus.FAIL:
        reasons.append(f"Score {score} is below the passing score of {pass_threshold}.")
    return score, status, penalty_applied, reasons


class InspectionPipeline:
    """Runs one submission through gate, content check, forensics and scoring.

    ``submit`` is the single entry point; it returns a ScoreVerdict for every
    outcome except storage failure, which raises PersistenceError.
    """

    def __init__(
        self,
        store: InspectionStore,
        blob_store: LocalBlobStore,
        scoring_client: ScoringClient,
        clock: Optional[Clock] = None,
        forensic_validator: Optional[ForensicValidator] = None,
        pass_threshold: int = rules.PASS_THRESHOLD,
        forensic_penalty: int = rules.FORENSIC_PENALTY,
    ):
        self.store = store
        self.blob_store = blob_store
        self.scoring_client = scoring_client
        self.clock = clock or Clock()
        self.gate = AdmissionWindowGate(store.list_configs, self.clock)
        self.forensic_validator = forensic_validator or ForensicValidator(self.clock)
        self.attendance = AttendanceSynchronizer(store)
        self.pass_threshold = pass_threshold
        self.forensic_penalty = forensic_penalty

    def check_admission(self, now: Optional[datetime] = None) -> GateResult:
        """Read-only "can I submit right now" query."""
        return self.gate.evaluate(now)

    def _reject(
        self,
        submission: InspectionSubmission,
        inspection_date: date,
        code: RejectionCode,
        reasons: List[str],
        forensics: Optional[ForensicReport] = None,
    ) -> ScoreVerdict:
        logger.info(f"Submission REJECTED ({code.value}) for {submission.occupant_id}: {reasons[0]}")
        return ScoreVerdict(
            occupant_id=submission.occupant_id,
            room_identifier=submission.room_identifier,
            inspection_date=inspection_date,
            submitted_at=submission.submitted_at,
            decision=Decision.REJECTED,
            numeric_score=0,
            status=VerdictStatus.FAIL,
            feedback_text=reasons[0],
            reasons=reasons,
            rejection_code=code,
            forensics=forensics,
        )

    def submit(
        self,
        occupant_id: str,
        room_identifier: str,
        image_bytes: bytes,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
        room_type: Optional[str] = None,
        building: Optional[str] = None,
    ) -> ScoreVerdict:
        """Run one submission end to end.

        ``room_type`` and ``building`` pick a reference template to score
        against; without a matching template the photo is scored on its own.
        """
        local_now = self.clock.localize(now)
        today = local_now.date()
        submission = InspectionSubmission(
            occupant_id=occupant_id,
            room_identifier=room_identifier,
            submitted_at=local_now,
        )

        logger.info("=" * 80)
        logger.info(f"INSPECTION START | Occupant: {occupant_id} | Room: {room_identifier} | {local_now.isoformat()}")
        logger.info("=" * 80)

        try:
            submission_id = self.store.reserve_submission(occupant_id, room_identifier, today, local_now)
        except DuplicateSubmissionError:
            return self._reject(submission, today, RejectionCode.DUPLICATE, [rules.DUPLICATE_REASON])
        except sqlite3.Error as e:
            logger.error(f"Could not reserve submission slot: {e}", exc_info=True)
            raise PersistenceError("Submission storage is unavailable, please retry") from e

        try:
            verdict = self._run_stages(submission, image_bytes, local_now, cancel_event, room_type, building)
        except sqlite3.Error as e:
            logger.error(f"Storage failed during inspection of {occupant_id}: {e}", exc_info=True)
            self._release(submission_id)
            raise PersistenceError("Submission storage is unavailable, please retry") from e
        except Exception:
            self._release(submission_id)
            raise

        if not verdict.accepted:
            self.store.release_submission(submission_id)
            return verdict

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Submission from {occupant_id} cancelled before saving; slot released")
            self.store.release_submission(submission_id)
            raise SubmissionCancelledError("Submission was cancelled by the caller")

        verdict.submission_id = submission_id
        self._persist(submission_id, verdict, image_bytes)
        logger.info(
            f"Submission ACCEPTED for {occupant_id}: score={verdict.numeric_score} "
            f"status={verdict.status.value} fallback={verdict.used_fallback}"
        )
        return verdict

    def _release(self, submission_id: int):
        """Release a reservation while another error is already propagating."""
        try:
            self.store.release_submission(submission_id)
        except sqlite3.Error as e:
            logger.error(f"Could not release reservation {submission_id}: {e}")

    def _reference_photo(self, room_type: str, building: Optional[str]) -> Optional[bytes]:
        template = self.store.find_template(room_type, building)
        if template is None:
            return None
        try:
            data = self.blob_store.read(template.image_blob_ref)
        except (OSError, ValueError) as e:
            logger.warning(f"Reference template {template.id} photo unreadable: {e}")
            return None
        logger.info(f"Comparing against reference template '{template.name}' (id={template.id})")
        return data

    def _run_stages(
        self,
        submission: InspectionSubmission,
        image_bytes: bytes,
        local_now: datetime,
        cancel_event: Optional[threading.Event],
        room_type: Optional[str] = None,
        building: Optional[str] = None,
    ) -> ScoreVerdict:
        today = local_now.date()

        logger.info("─" * 80)
        logger.info("ADMISSION GATE")
        gate = self.gate.evaluate(local_now)
        if not gate.allowed:
            return self._reject(submission, today, RejectionCode.ADMISSION, [gate.reason])
        config: AdmissionWindowConfig = gate.active_config

        if config.photo_content_check_enabled:
            logger.info("─" * 80)
            logger.info("CONTENT CHECK")
            scene = self.scoring_client.classify_scene(image_bytes, cancel_event)
            if not scene.is_room:
                return self._reject(
                    submission,
                    today,
                    RejectionCode.CONTENT,
                    [f"Photo does not show a dormitory room: {scene.reason or scene.category.lower()}."],
                )

        forensics: Optional[ForensicReport] = None
        if config.forensics_enabled:
            logger.info("─" * 80)
            logger.info("FORENSICS")
            forensics = self.forensic_validator.analyze(image_bytes, config, local_now)

        logger.info("─" * 80)
        logger.info("SCORING")
        if room_type:
            reference = self._reference_photo(room_type, building)
            result = self.scoring_client.score_with_template(image_bytes, reference, cancel_event)
        else:
            result = self.scoring_client.score(image_bytes, cancel_event=cancel_event)

        score, status, penalty_applied, reasons = aggregate_score(
            result, forensics, self.pass_threshold, self.forensic_penalty
        )

        feedback = result.feedback
        if result.used_fallback:
            feedback = f"{feedback} {rules.FALLBACK_FEEDBACK_NOTE}"
        if penalty_applied and reasons:
            feedback = f"{feedback}\n" + "\n".join(f"- {reason}" for reason in reasons)

        logger.info(
            f"Aggregate: base={result.numeric_score} final={score} penalty={penalty_applied} "
            f"threshold={self.pass_threshold} status={status.value}"
        )

        return ScoreVerdict(
            occupant_id=submission.occupant_id,
            room_identifier=submission.room_identifier,
            inspection_date=today,
            submitted_at=submission.submitted_at,
            decision=Decision.ACCEPTED,
            numeric_score=score,
            base_score=result.numeric_score,
            status=status,
            feedback_text=feedback,
            forensic_penalty_applied=penalty_applied,
            used_fallback=result.used_fallback,
            reasons=reasons,
            forensics=forensics,
        )

    def _persist(self, submission_id: int, verdict: ScoreVerdict, image_bytes: bytes):
        """Store photo, verdict and attendance as one unit; undo everything on failure."""
        blob_ref = None
        try:
            blob_ref = self.blob_store.store(image_bytes, verdict.occupant_id, verdict.inspection_date)
            verdict.image_blob_ref = blob_ref
            marked = self.store.complete_submission(submission_id, verdict, attendance_status(verdict))
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Persisting verdict for {verdict.occupant_id} failed: {e}", exc_info=True)
            if blob_ref is not None:
                try:
                    self.blob_store.delete(blob_ref)
                except OSError as cleanup_error:
                    logger.error(f"Could not delete orphaned photo {blob_ref}: {cleanup_error}")
            self.store.discard_submission(submission_id)
            verdict.image_blob_ref = None
            verdict.submission_id = None
            raise PersistenceError("Could not save the inspection result, please retry") from e
        self.attendance.report(verdict, marked)

    # -----------------------------
    # Administrative review
    # -----------------------------
    def get_today_submission(self, occupant_id: str, now: Optional[datetime] = None) -> Optional[ScoreVerdict]:
        return self.store.find_submission(occupant_id, self.clock.today(now))

    def add_admin_comment(self, submission_id: int, comment: str) -> ScoreVerdict:
        verdict = self.store.update_submission_review(submission_id, admin_comment=comment)
        logger.info(f"Admin comment added to submission {submission_id}")
        return verdict

    def override_verdict(
        self,
        submission_id: int,
        numeric_score: Optional[int] = None,
        status: Optional[VerdictStatus] = None,
        admin_comment: Optional[str] = None,
    ) -> ScoreVerdict:
        """Administrator correction of a stored verdict, mirrored into the ledger."""
        if numeric_score is not None:
            if not rules.MIN_SCORE <= numeric_score <= rules.MAX_SCORE:
                raise ValueError(f"Score must be between {rules.MIN_SCORE} and {rules.MAX_SCORE}")
            if status is None:
                status = VerdictStatus.PASS if numeric_score >= self.pass_threshold else VerdictStatus.FAIL
        verdict = self.store.update_submission_review(submission_id, numeric_score, status, admin_comment)
        self.attendance.sync(verdict)
        logger.info(
            f"Submission {submission_id} overridden: score={verdict.numeric_score} status={verdict.status.value}"
        )
        return verdict

    def reject_inspection(self, submission_id: int, reason: str) -> ScoreVerdict:
        """Throw out a stored verdict so the occupant can submit again.

        The verdict row goes and the ledger entry returns to PENDING with the
        reason in its notes. The photo is removed last; a leftover file is
        only logged.
        """
        note = f"{rules.REJECTION_NOTE_PREFIX}: {reason}"
        verdict = self.store.reject_submission(submission_id, note)
        if verdict.image_blob_ref:
            try:
                self.blob_store.delete(verdict.image_blob_ref)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not delete photo {verdict.image_blob_ref} of rejected submission: {e}")
        logger.info(f"Submission {submission_id} of {verdict.occupant_id} rejected: {reason}")
        return verdict

    def list_inspections(self, inspection_date: date) -> List[ScoreVerdict]:
        return self.store.list_submissions(inspection_date)

    def inspection_statistics(self, inspection_date: date) -> InspectionStatistics:
        stats = self.store.submission_statistics(inspection_date)
        logger.info(
            f"Inspections {inspection_date.isoformat()}: {stats.total} total, "
            f"{stats.passed} passed, {stats.failed} failed"
        )
        return stats

    def update_attendance_entry(
        self,
        entry_id: int,
        is_submitted: Optional[bool] = None,
        score: Optional[int] = None,
        status: Optional[AttendanceStatus] = None,
        notes: Optional[str] = None,
    ) -> AttendanceEntry:
        return self.attendance.update_entry(entry_id, is_submitted, score, status, notes)

    # -----------------------------
    # Reference templates
    # -----------------------------
    def add_room_template(
        self,
        name: str,
        room_type: str,
        image_bytes: bytes,
        building: Optional[str] = None,
        description: Optional[str] = None,
        is_default: bool = False,
    ) -> RoomTemplate:
        """Register a reference photo that submissions of ``room_type`` are compared against."""
        if not is_readable_image(image_bytes):
            raise ValueError("Template photo is not a readable image")
        room_type = normalize_room_type(room_type)
        blob_ref = self.blob_store.store_template(image_bytes, room_type)
        template = RoomTemplate(
            name=name,
            room_type=room_type,
            image_blob_ref=blob_ref,
            building=building or None,
            description=description,
            is_default=is_default,
        )
        try:
            return self.store.save_template(template)
        except sqlite3.Error:
            self.blob_store.delete(blob_ref)
            raise


def build_pipeline(settings: PipelineSettings, scoring_client: Optional[ScoringClient] = None) -> InspectionPipeline:
    """Wire the pipeline from settings, creating tables and the default window."""
    clock = Clock(settings.timezone)
    store = InspectionStore(settings.database_path)
    store.create_tables()
    store.ensure_default_config(default_admission_config)
    return InspectionPipeline(
        store=store,
        blob_store=LocalBlobStore(settings.blob_directory),
        scoring_client=scoring_client or ScoringClient(settings.scoring),
        clock=clock,
        forensic_validator=ForensicValidator(
            clock,
            editing_software_denylist=settings.editing_software_denylist,
            strict_metadata=settings.strict_metadata,
        ),
        pass_threshold=settings.pass_threshold,
        forensic_penalty=settings.forensic_penalty,
    )
