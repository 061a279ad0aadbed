"""Type definitions for the room inspection pipeline."""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Optional, List, Dict, Any, FrozenSet, Union


WEEKDAY_CODES = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
ALL_WEEKDAYS: FrozenSet[str] = frozenset(WEEKDAY_CODES)


def parse_weekdays(value: Optional[Union[str, List[str], FrozenSet[str]]]) -> FrozenSet[str]:
    """Parse "ALL", "MON,WED" or an iterable of day codes into a frozenset."""
    if value is None:
        return ALL_WEEKDAYS
    if isinstance(value, str):
        if value.strip().upper() in ("", "ALL"):
            return ALL_WEEKDAYS
        items = value.split(",")
    else:
        items = list(value)
    days = set()
    for item in items:
        code = str(item).strip().upper()[:3]
        if code == "ALL":
            return ALL_WEEKDAYS
        if code not in WEEKDAY_CODES:
            raise ValueError(f"Unknown weekday: {item!r}")
        days.add(code)
    return frozenset(days)


def format_weekdays(days: FrozenSet[str]) -> str:
    if days == ALL_WEEKDAYS:
        return "ALL"
    return ",".join(code for code in WEEKDAY_CODES if code in days)


class GateStatus(Enum):
    """Admission gate outcome."""
    OPEN = "open"
    NOT_YET_OPEN = "not_yet_open"
    CLOSED = "closed"
    NO_SCHEDULE = "no_schedule"


class CheckOutcome(Enum):
    """Result of a single forensic check. UNKNOWN means the metadata was absent."""
    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class Decision(Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class RejectionCode(Enum):
    ADMISSION = "ADMISSION"
    DUPLICATE = "DUPLICATE"
    CONTENT = "CONTENT"


class VerdictStatus(Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class AttendanceStatus(Enum):
    PENDING = "PENDING"
    PASS = "PASS"
    FAIL = "FAIL"


@dataclass
class AdmissionWindowConfig:
    """A named inspection window rule, administered outside the pipeline."""
    name: str
    start_time: time
    end_time: time
    id: Optional[int] = None
    specific_date: Optional[date] = None
    recurring_weekdays: FrozenSet[str] = ALL_WEEKDAYS
    enabled: bool = True
    is_default: bool = False
    forensics_enabled: bool = True
    time_tolerance_minutes: int = 10
    geofence_enabled: bool = False
    reference_latitude: Optional[float] = None
    reference_longitude: Optional[float] = None
    geofence_radius_meters: int = 100
    photo_content_check_enabled: bool = True

    @property
    def crosses_midnight(self) -> bool:
        return self.start_time > self.end_time

    def contains(self, moment: time) -> bool:
        """Inclusive window check; windows with start > end wrap past midnight."""
        if self.crosses_midnight:
            return moment >= self.start_time or moment <= self.end_time
        return self.start_time <= moment <= self.end_time

    def applies_on_weekday(self, weekday_code: str) -> bool:
        return weekday_code in self.recurring_weekdays

    def time_range_label(self) -> str:
        return f"{self.start_time.strftime('%H:%M')} ~ {self.end_time.strftime('%H:%M')}"


@dataclass
class NextWindow:
    """The nearest future date-specific inspection window."""
    date: date
    config: AdmissionWindowConfig
    days_until: int


@dataclass
class GateResult:
    allowed: bool
    status: GateStatus
    reason: str
    active_config: Optional[AdmissionWindowConfig] = None
    next_window: Optional[NextWindow] = None


@dataclass
class InspectionSubmission:
    """One submission attempt."""
    occupant_id: str
    room_identifier: str
    submitted_at: datetime
    image_blob_ref: Optional[str] = None


@dataclass
class CaptureMetadata:
    """Capture fields extracted from an image. None means absent or unreadable."""
    capture_timestamp: Optional[datetime] = None
    capture_latitude: Optional[float] = None
    capture_longitude: Optional[float] = None
    editing_software_tag: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_gps(self) -> bool:
        return self.capture_latitude is not None and self.capture_longitude is not None


@dataclass
class ForensicReport:
    """Derived authenticity checks for one image."""
    capture_timestamp: Optional[datetime] = None
    capture_latitude: Optional[float] = None
    capture_longitude: Optional[float] = None
    editing_software_tag: Optional[str] = None
    date_check: CheckOutcome = CheckOutcome.UNKNOWN
    time_check: CheckOutcome = CheckOutcome.UNKNOWN
    location_check: CheckOutcome = CheckOutcome.UNKNOWN
    edit_check: CheckOutcome = CheckOutcome.UNKNOWN
    date_valid: bool = True
    time_valid: bool = True
    location_valid: bool = True
    not_edited: bool = True
    distance_meters: Optional[float] = None
    time_drift_minutes: Optional[float] = None

    @property
    def overall_valid(self) -> bool:
        return self.date_valid and self.time_valid and self.location_valid and self.not_edited

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capture_timestamp": self.capture_timestamp.isoformat() if self.capture_timestamp else None,
            "capture_latitude": self.capture_latitude,
            "capture_longitude": self.capture_longitude,
            "editing_software_tag": self.editing_software_tag,
            "date_valid": self.date_valid,
            "time_valid": self.time_valid,
            "location_valid": self.location_valid,
            "not_edited": self.not_edited,
            "overall_valid": self.overall_valid,
            "checks": {
                "date": self.date_check.value,
                "time": self.time_check.value,
                "location": self.location_check.value,
                "edit": self.edit_check.value,
            },
            "distance_meters": self.distance_meters,
            "time_drift_minutes": self.time_drift_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForensicReport":
        """Rebuild a report from the dict form stored with a verdict."""
        checks = data.get("checks") or {}
        stamp = data.get("capture_timestamp")
        return cls(
            capture_timestamp=datetime.fromisoformat(stamp) if stamp else None,
            capture_latitude=data.get("capture_latitude"),
            capture_longitude=data.get("capture_longitude"),
            editing_software_tag=data.get("editing_software_tag"),
            date_check=CheckOutcome(checks.get("date", CheckOutcome.UNKNOWN.value)),
            time_check=CheckOutcome(checks.get("time", CheckOutcome.UNKNOWN.value)),
            location_check=CheckOutcome(checks.get("location", CheckOutcome.UNKNOWN.value)),
            edit_check=CheckOutcome(checks.get("edit", CheckOutcome.UNKNOWN.value)),
            date_valid=data.get("date_valid", True),
            time_valid=data.get("time_valid", True),
            location_valid=data.get("location_valid", True),
            not_edited=data.get("not_edited", True),
            distance_meters=data.get("distance_meters"),
            time_drift_minutes=data.get("time_drift_minutes"),
        )


# Parsed scoring-service responses. Exactly one of these comes out of
# ScoringClient.parse_response for any payload.

@dataclass(frozen=True)
class Success:
    score: int
    feedback: str
    text: str = ""
    not_inspectable: bool = False


@dataclass(frozen=True)
class Partial:
    text: str


@dataclass(frozen=True)
class Blocked:
    reason: str


@dataclass(frozen=True)
class Errored:
    reason: str


ScoringOutcome = Union[Success, Partial, Blocked, Errored]


@dataclass
class ScoringResult:
    numeric_score: int
    feedback: str
    succeeded: bool
    used_fallback: bool = False
    partial: bool = False
    not_inspectable: bool = False
    outcome: Optional[ScoringOutcome] = None


@dataclass
class SceneCheck:
    """Content check result: does the photo show a living-space interior."""
    is_room: bool
    category: str = "ROOM"
    reason: str = ""


@dataclass
class ScoreVerdict:
    """Final outcome of one pipeline run."""
    occupant_id: str
    room_identifier: str
    inspection_date: date
    submitted_at: datetime
    decision: Decision
    numeric_score: int = 0
    status: VerdictStatus = VerdictStatus.FAIL
    feedback_text: str = ""
    forensic_penalty_applied: bool = False
    used_fallback: bool = False
    reasons: List[str] = field(default_factory=list)
    submission_id: Optional[int] = None
    rejection_code: Optional[RejectionCode] = None
    base_score: Optional[int] = None
    forensics: Optional[ForensicReport] = None
    image_blob_ref: Optional[str] = None
    admin_comment: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.decision == Decision.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "occupant_id": self.occupant_id,
            "room_identifier": self.room_identifier,
            "inspection_date": self.inspection_date.isoformat(),
            "submitted_at": self.submitted_at.isoformat(),
            "decision": self.decision.value,
            "rejection_code": self.rejection_code.value if self.rejection_code else None,
            "numeric_score": self.numeric_score,
            "base_score": self.base_score,
            "status": self.status.value,
            "feedback_text": self.feedback_text,
            "forensic_penalty_applied": self.forensic_penalty_applied,
            "used_fallback": self.used_fallback,
            "reasons": list(self.reasons),
            "forensics": self.forensics.to_dict() if self.forensics else None,
            "image_blob_ref": self.image_blob_ref,
            "admin_comment": self.admin_comment,
        }


@dataclass
class AttendanceEntry:
    """One occupant's row in a day's attendance ledger."""
    inspection_date: date
    occupant_id: str
    room_identifier: str
    occupant_name: Optional[str] = None
    is_submitted: bool = False
    submission_time: Optional[datetime] = None
    score: Optional[int] = None
    status: AttendanceStatus = AttendanceStatus.PENDING
    notes: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "inspection_date": self.inspection_date.isoformat(),
            "occupant_id": self.occupant_id,
            "occupant_name": self.occupant_name,
            "room_identifier": self.room_identifier,
            "is_submitted": self.is_submitted,
            "submission_time": self.submission_time.isoformat() if self.submission_time else None,
            "score": self.score,
            "status": self.status.value,
            "notes": self.notes,
        }


@dataclass
class RosterMember:
    occupant_id: str
    room_identifier: str
    occupant_name: Optional[str] = None


@dataclass
class LedgerStatistics:
    total: int
    submitted: int
    pending: int
    submission_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "submitted": self.submitted,
            "pending": self.pending,
            "submission_rate": self.submission_rate,
        }


@dataclass
class InspectionStatistics:
    """Pass/fail counts over a day's stored verdicts."""
    inspection_date: date
    total: int
    passed: int
    failed: int
    average_score: Optional[float] = None

    @property
    def pass_rate(self) -> float:
        return round(self.passed * 100.0 / self.total, 1) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.inspection_date.isoformat(),
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "pass_rate": self.pass_rate,
            "average_score": self.average_score,
        }


ROOM_TYPES = ("SINGLE", "DOUBLE", "MULTI")


def normalize_room_type(value: str) -> str:
    room_type = value.strip().upper()
    if room_type not in ROOM_TYPES:
        raise ValueError(f"Unknown room type: {value!r} (expected one of {', '.join(ROOM_TYPES)})")
    return room_type


@dataclass
class RoomTemplate:
    """Reference photo of a tidy room, compared against submissions of the same room type."""
    name: str
    room_type: str
    image_blob_ref: str
    id: Optional[int] = None
    building: Optional[str] = None
    description: Optional[str] = None
    is_default: bool = False
    is_active: bool = True

    def __post_init__(self):
        self.room_type = normalize_room_type(self.room_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "room_type": self.room_type,
            "building": self.building,
            "description": self.description,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "image_blob_ref": self.image_blob_ref,
        }


class PipelineError(Exception):
    """Base class for pipeline failures."""


class DuplicateSubmissionError(PipelineError):
    """A verdict for this occupant and date already exists or is being produced."""


class PersistenceError(PipelineError):
    """Storage failed; the request can be retried and no verdict was kept."""


class LedgerExistsError(PipelineError):
    pass


class LedgerNotFoundError(PipelineError):
    pass


class SubmissionNotFoundError(PipelineError):
    pass


class AttendanceEntryNotFoundError(PipelineError):
    pass


class SubmissionCancelledError(PipelineError):
    """The caller went away before a verdict was stored; nothing was kept."""
