import random
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time

import pytest

from conftest import SUBMIT_AT, FakeTransport, make_jpeg, text_payload
from room_inspection.config.settings import ScoringConfig
from room_inspection.orchestration.runner import InspectionPipeline, aggregate_score
from room_inspection.storage.blob_store import LocalBlobStore
from room_inspection.types import (
    AdmissionWindowConfig,
    AttendanceEntryNotFoundError,
    AttendanceStatus,
    CheckOutcome,
    Decision,
    ForensicReport,
    PersistenceError,
    RejectionCode,
    RosterMember,
    ScoringResult,
    SubmissionCancelledError,
    SubmissionNotFoundError,
    VerdictStatus,
)
from room_inspection.validators.scoring_client import ScoringClient

TODAY = date(2026, 10, 19)


def _roster(store, *occupants):
    store.open_ledger(TODAY, [RosterMember(occupant, "301", None) for occupant in occupants])


def _photo_files(tmp_path):
    return [p for p in (tmp_path / "photos").rglob("*") if p.is_file()]


# -----------------------------
# Aggregation
# -----------------------------

def _result(score):
    return ScoringResult(numeric_score=score, feedback="fb", succeeded=True)


def test_aggregate_without_forensics():
    score, status, penalty, reasons = aggregate_score(_result(6), None)
    assert (score, status, penalty, reasons) == (6, VerdictStatus.PASS, False, [])


def test_aggregate_penalty_and_floor():
    report = ForensicReport(not_edited=False, edit_check=CheckOutcome.INVALID, editing_software_tag="VSCO")
    score, status, penalty, reasons = aggregate_score(_result(8), report)
    assert score == 5
    assert status == VerdictStatus.FAIL
    assert penalty
    assert reasons[0] == "Photo was edited with VSCO."
    assert reasons[-1].startswith("Score 5 is below")

    assert aggregate_score(_result(2), report)[0] == 0


def test_aggregate_stale_date_forces_zero():
    report = ForensicReport(date_valid=False, time_valid=False)
    score, status, _, reasons = aggregate_score(_result(10), report)
    assert score == 0
    assert status == VerdictStatus.FAIL
    assert reasons[0] == "Photo was not taken today."


def test_aggregate_threshold_is_inclusive():
    assert aggregate_score(_result(6), None, pass_threshold=6)[1] == VerdictStatus.PASS
    assert aggregate_score(_result(5), None, pass_threshold=6)[1] == VerdictStatus.FAIL


# -----------------------------
# Submissions
# -----------------------------

def test_accepted_submission_is_stored_and_synced(pipeline, store, transport, fresh_photo, tmp_path):
    _roster(store, "s1", "s2")

    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    assert verdict.decision == Decision.ACCEPTED
    assert verdict.numeric_score == 8
    assert verdict.status == VerdictStatus.PASS
    assert verdict.submission_id is not None
    assert transport.count("scene") == 1
    assert transport.count("score") == 1
    assert len(_photo_files(tmp_path)) == 1

    stored = store.find_submission("s1", TODAY)
    assert stored.numeric_score == 8
    assert stored.image_blob_ref == verdict.image_blob_ref

    entry = store.get_entry(TODAY, "s1")
    assert entry.is_submitted
    assert entry.status == AttendanceStatus.PASS
    assert entry.score == 8
    stats = store.ledger_statistics(TODAY)
    assert (stats.submitted, stats.pending, stats.submission_rate) == (1, 1, 50.0)


def test_closed_gate_never_calls_scoring(pipeline, transport, fresh_photo, store):
    verdict = pipeline.submit("s1", "301", fresh_photo, now=datetime(2026, 10, 19, 20, 0))
    assert verdict.decision == Decision.REJECTED
    assert verdict.rejection_code == RejectionCode.ADMISSION
    assert transport.calls == []
    # Slot was released, so a later attempt in the window can go through
    assert store.find_submission("s1", TODAY) is None
    assert pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT).accepted


def test_second_submission_is_duplicate(pipeline, transport, fresh_photo):
    assert pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT).accepted
    again = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)
    assert again.rejection_code == RejectionCode.DUPLICATE
    assert again.feedback_text == "Already submitted today."
    assert transport.count("score") == 1


def test_concurrent_submissions_accept_exactly_one(store, tmp_path, clock, fresh_photo):
    transport = FakeTransport(delay=0.05)
    client = ScoringClient(ScoringConfig(timeout_seconds=5.0), transport=transport, rng=random.Random(1))
    pipeline = InspectionPipeline(store, LocalBlobStore(tmp_path / "photos"), client, clock=clock)
    start = threading.Barrier(5)

    def submit():
        start.wait()
        return pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    try:
        with ThreadPoolExecutor(max_workers=5) as executor:
            verdicts = list(executor.map(lambda _: submit(), range(5)))
    finally:
        client.close()

    accepted = [v for v in verdicts if v.accepted]
    duplicates = [v for v in verdicts if v.rejection_code == RejectionCode.DUPLICATE]
    assert len(accepted) == 1
    assert len(duplicates) == 4
    assert transport.count("score") == 1


def test_stale_photo_scores_zero(pipeline, store):
    _roster(store, "s1")
    stale = make_jpeg(captured_at=datetime(2026, 10, 18, 22, 0))

    verdict = pipeline.submit("s1", "301", stale, now=SUBMIT_AT)

    assert verdict.accepted
    assert verdict.base_score == 8
    assert verdict.numeric_score == 0
    assert verdict.status == VerdictStatus.FAIL
    assert verdict.forensic_penalty_applied
    assert "Photo was not taken today." in verdict.feedback_text
    assert store.get_entry(TODAY, "s1").status == AttendanceStatus.FAIL


def test_edited_photo_is_penalized(pipeline):
    edited = make_jpeg(captured_at=datetime(2026, 10, 19, 21, 58), software="Adobe Lightroom")
    verdict = pipeline.submit("s1", "301", edited, now=SUBMIT_AT)
    assert verdict.numeric_score == 5
    assert verdict.status == VerdictStatus.FAIL
    assert verdict.reasons[0] == "Photo was edited with Adobe Lightroom."


def test_non_room_photo_is_rejected(store, tmp_path, clock, fresh_photo):
    transport = FakeTransport(scene_payload=text_payload("SCENE: BATHROOM"))
    client = ScoringClient(ScoringConfig(timeout_seconds=2.0), transport=transport)
    pipeline = InspectionPipeline(store, LocalBlobStore(tmp_path / "photos"), client, clock=clock)
    try:
        verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)
    finally:
        client.close()
    assert verdict.rejection_code == RejectionCode.CONTENT
    assert verdict.numeric_score == 0
    assert "bathroom" in verdict.feedback_text
    assert transport.count("score") == 0
    assert store.find_submission("s1", TODAY) is None


def test_scoring_outage_uses_fallback(store, tmp_path, clock, fresh_photo):
    transport = FakeTransport(score_payload={"error": {"message": "unavailable"}})
    client = ScoringClient(ScoringConfig(timeout_seconds=2.0), transport=transport, rng=random.Random(5))
    pipeline = InspectionPipeline(store, LocalBlobStore(tmp_path / "photos"), client, clock=clock)
    try:
        verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)
    finally:
        client.close()
    assert verdict.accepted
    assert verdict.used_fallback
    assert 6 <= verdict.numeric_score <= 8
    assert "provisional score" in verdict.feedback_text


def test_disabled_checks_are_skipped(store, pipeline, transport):
    for config in store.list_configs():
        config.photo_content_check_enabled = False
        config.forensics_enabled = False
        store.save_config(config)

    stale = make_jpeg(captured_at=datetime(2026, 10, 1, 9, 0), software="Photoshop")
    verdict = pipeline.submit("s1", "301", stale, now=SUBMIT_AT)
    assert verdict.numeric_score == 8
    assert verdict.forensics is None
    assert transport.calls == ["score"]


def test_pinned_config_overrides_default(store, pipeline, fresh_photo):
    store.save_config(AdmissionWindowConfig(
        name="early today",
        start_time=time(7, 0),
        end_time=time(8, 0),
        specific_date=TODAY,
    ))
    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)
    assert verdict.rejection_code == RejectionCode.ADMISSION


def test_persistence_failure_leaves_nothing_behind(pipeline, store, fresh_photo, tmp_path, monkeypatch):
    _roster(store, "s1")

    def broken_ledger_write(*args):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "_mark_entry", broken_ledger_write)

    with pytest.raises(PersistenceError):
        pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    assert store.find_submission("s1", TODAY) is None
    assert _photo_files(tmp_path) == []
    entry = store.get_entry(TODAY, "s1")
    assert not entry.is_submitted
    assert entry.score is None
    assert entry.status == AttendanceStatus.PENDING

    monkeypatch.undo()
    assert pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT).accepted


def test_statistics_failure_after_save_keeps_verdict_and_ledger(pipeline, store, fresh_photo, monkeypatch):
    _roster(store, "s1")

    def broken_statistics(inspection_date):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "ledger_statistics", broken_statistics)

    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    assert verdict.accepted
    stored = store.find_submission("s1", TODAY)
    assert stored is not None
    entry = store.get_entry(TODAY, "s1")
    assert entry.is_submitted
    assert entry.score == stored.numeric_score == 8
    assert entry.status == AttendanceStatus.PASS


def test_unexpected_error_releases_the_slot(pipeline, store, fresh_photo, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(pipeline.forensic_validator, "analyze", explode)
    with pytest.raises(RuntimeError):
        pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    monkeypatch.undo()
    assert pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT).accepted


def test_release_failure_does_not_mask_the_original_error(pipeline, store, fresh_photo, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("unexpected")

    def broken_release(submission_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(pipeline.forensic_validator, "analyze", explode)
    monkeypatch.setattr(store, "release_submission", broken_release)
    with pytest.raises(RuntimeError, match="unexpected"):
        pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)


def test_stored_verdict_keeps_forensic_report(pipeline, fresh_photo):
    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)
    assert verdict.forensics is not None

    stored = pipeline.get_today_submission("s1", SUBMIT_AT)
    assert stored.forensics is not None
    assert stored.forensics.to_dict() == verdict.forensics.to_dict()
    assert stored.forensics.date_check == CheckOutcome.VALID
    assert stored.forensics.editing_software_tag == "iOS 17.4"
    assert stored.to_dict()["forensics"]["checks"]["edit"] == "valid"

    commented = pipeline.add_admin_comment(verdict.submission_id, "ok")
    assert commented.forensics == stored.forensics


# -----------------------------
# Reference templates
# -----------------------------

def test_submission_is_compared_with_reference_template(pipeline, transport, fresh_photo):
    reference = make_jpeg(software="reference")
    template = pipeline.add_room_template("Double room", "double", reference, is_default=True)
    assert template.id is not None
    assert template.room_type == "DOUBLE"

    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT, room_type="DOUBLE")

    assert verdict.numeric_score == 9
    assert transport.count("template") == 1
    assert transport.count("score") == 0
    assert reference in transport.references


def test_submission_without_matching_template_is_scored_alone(pipeline, transport, fresh_photo):
    pipeline.add_room_template("Single room", "SINGLE", make_jpeg(), is_default=True)
    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT, room_type="MULTI")
    assert verdict.numeric_score == 8
    assert transport.count("template") == 0
    assert transport.count("score") == 1


def test_building_template_is_preferred_over_default(pipeline, store):
    pipeline.add_room_template("Default double", "DOUBLE", make_jpeg(), is_default=True)
    east = pipeline.add_room_template("East double", "DOUBLE", make_jpeg(software="east"), building="East")

    assert store.find_template("double", "East").id == east.id
    assert store.find_template("DOUBLE", "West").name == "Default double"
    assert store.find_template("DOUBLE").name == "Default double"
    assert store.find_template("SINGLE") is None


def test_new_default_template_replaces_previous_default(pipeline, store):
    pipeline.add_room_template("Old", "SINGLE", make_jpeg(), is_default=True)
    pipeline.add_room_template("New", "SINGLE", make_jpeg(software="new"), is_default=True)
    defaults = [t.name for t in store.list_templates() if t.is_default]
    assert defaults == ["New"]


def test_template_requires_image_and_known_room_type(pipeline, tmp_path):
    with pytest.raises(ValueError):
        pipeline.add_room_template("Broken", "SINGLE", b"not an image")
    with pytest.raises(ValueError):
        pipeline.add_room_template("Suite", "PENTHOUSE", make_jpeg())
    assert not (tmp_path / "photos" / "templates").exists()


# -----------------------------
# Administrative review
# -----------------------------

def test_override_updates_verdict_and_ledger(pipeline, store, fresh_photo):
    _roster(store, "s1")
    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    overridden = pipeline.override_verdict(verdict.submission_id, numeric_score=4)
    assert overridden.numeric_score == 4
    assert overridden.status == VerdictStatus.FAIL
    entry = store.get_entry(TODAY, "s1")
    assert entry.score == 4
    assert entry.status == AttendanceStatus.FAIL

    with pytest.raises(ValueError):
        pipeline.override_verdict(verdict.submission_id, numeric_score=11)


def test_admin_comment(pipeline, fresh_photo):
    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)
    commented = pipeline.add_admin_comment(verdict.submission_id, "Please tidy the desk.")
    assert commented.admin_comment == "Please tidy the desk."
    assert commented.numeric_score == verdict.numeric_score
    assert pipeline.get_today_submission("s1", SUBMIT_AT).admin_comment == "Please tidy the desk."


def test_reject_inspection_frees_the_day(pipeline, store, fresh_photo, tmp_path):
    _roster(store, "s1")
    verdict = pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT)

    rejected = pipeline.reject_inspection(verdict.submission_id, "photo is blurry")

    assert rejected.submission_id == verdict.submission_id
    assert store.find_submission("s1", TODAY) is None
    assert _photo_files(tmp_path) == []
    entry = store.get_entry(TODAY, "s1")
    assert not entry.is_submitted
    assert entry.score is None
    assert entry.status == AttendanceStatus.PENDING
    assert entry.notes == "Rejected by administrator: photo is blurry"

    assert pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT).accepted
    with pytest.raises(SubmissionNotFoundError):
        pipeline.reject_inspection(verdict.submission_id, "again")


def test_list_and_statistics_by_date(pipeline):
    fresh = make_jpeg(captured_at=datetime(2026, 10, 19, 21, 55))
    edited = make_jpeg(captured_at=datetime(2026, 10, 19, 21, 58), software="Snapseed")
    pipeline.submit("s1", "301", fresh, now=SUBMIT_AT)
    pipeline.submit("s2", "302", edited, now=datetime(2026, 10, 19, 22, 5))

    verdicts = pipeline.list_inspections(TODAY)
    assert [v.occupant_id for v in verdicts] == ["s1", "s2"]
    assert [v.status for v in verdicts] == [VerdictStatus.PASS, VerdictStatus.FAIL]

    stats = pipeline.inspection_statistics(TODAY)
    assert (stats.total, stats.passed, stats.failed) == (2, 1, 1)
    assert stats.pass_rate == 50.0
    assert stats.average_score == 6.5

    empty = pipeline.inspection_statistics(date(2026, 10, 20))
    assert (empty.total, empty.pass_rate, empty.average_score) == (0, 0.0, None)
    assert pipeline.list_inspections(date(2026, 10, 20)) == []


def test_manual_attendance_entry_edit(pipeline, store):
    _roster(store, "s1")
    entry = store.get_entry(TODAY, "s1")

    edited = pipeline.update_attendance_entry(entry.id, is_submitted=True, score=6, status=AttendanceStatus.PASS, notes="Checked in person")
    assert edited.is_submitted
    assert (edited.score, edited.status, edited.notes) == (6, AttendanceStatus.PASS, "Checked in person")

    notes_only = pipeline.update_attendance_entry(entry.id, notes="Away on a field trip")
    assert notes_only.score == 6
    assert notes_only.notes == "Away on a field trip"

    with pytest.raises(ValueError):
        pipeline.update_attendance_entry(entry.id)
    with pytest.raises(ValueError):
        pipeline.update_attendance_entry(entry.id, score=11)
    with pytest.raises(AttendanceEntryNotFoundError):
        pipeline.update_attendance_entry(999, notes="nobody")


def test_cancelled_submission_is_not_saved(pipeline, store, fresh_photo, tmp_path):
    _roster(store, "s1")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(SubmissionCancelledError):
        pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT, cancel_event=cancel)

    assert store.find_submission("s1", TODAY) is None
    assert _photo_files(tmp_path) == []
    assert not store.get_entry(TODAY, "s1").is_submitted
    assert pipeline.submit("s1", "301", fresh_photo, now=SUBMIT_AT).accepted
