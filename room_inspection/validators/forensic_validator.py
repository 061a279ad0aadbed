"""Photo authenticity checks based on capture metadata."""
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from room_inspection.config import rules
from room_inspection.extractors.image_extractor import extract_capture_metadata
from room_inspection.types import (
    AdmissionWindowConfig,
    CaptureMetadata,
    CheckOutcome,
    ForensicReport,
)
from room_inspection.utils.clock import Clock

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class ForensicValidator:
    """Derives date, time, location and edit-tool checks from capture metadata.

    A field that is missing or unreadable yields ``CheckOutcome.UNKNOWN``.
    With ``strict_metadata`` off (the default) UNKNOWN counts as valid, since a
    missing field cannot disprove the photo; with it on, UNKNOWN counts as a
    failed check.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        editing_software_denylist: Iterable[str] = rules.EDITING_SOFTWARE_DENYLIST,
        strict_metadata: bool = False,
    ):
        self.clock = clock or Clock()
        self.editing_software_denylist = tuple(
            fragment.lower() for fragment in editing_software_denylist if fragment
        )
        self.strict_metadata = strict_metadata

    def _counts_as_valid(self, outcome: CheckOutcome) -> bool:
        if outcome == CheckOutcome.UNKNOWN:
            return not self.strict_metadata
        return outcome == CheckOutcome.VALID

    def analyze(
        self,
        image: Union[bytes, Path, CaptureMetadata],
        config: AdmissionWindowConfig,
        now: Optional[datetime] = None,
    ) -> ForensicReport:
        local_now = self.clock.localize(now)
        if isinstance(image, CaptureMetadata):
            metadata = image
        else:
            metadata = extract_capture_metadata(image, self.clock.zone)

        report = ForensicReport(
            capture_timestamp=metadata.capture_timestamp,
            capture_latitude=metadata.capture_latitude,
            capture_longitude=metadata.capture_longitude,
            editing_software_tag=metadata.editing_software_tag,
        )

        report.date_check, report.time_check, report.time_drift_minutes = self._check_timestamp(
            metadata.capture_timestamp, local_now, config.time_tolerance_minutes
        )
        report.location_check, report.distance_meters = self._check_location(metadata, config)
        report.edit_check = self._check_software(metadata.editing_software_tag)

        report.date_valid = self._counts_as_valid(report.date_check)
        report.time_valid = self._counts_as_valid(report.time_check)
        report.location_valid = self._counts_as_valid(report.location_check)
        report.not_edited = self._counts_as_valid(report.edit_check)

        logger.info(
            f"Forensics: date={report.date_check.value}, time={report.time_check.value}, "
            f"location={report.location_check.value}, edit={report.edit_check.value}, "
            f"overall_valid={report.overall_valid}"
        )
        return report

    def _check_timestamp(self, captured: Optional[datetime], now: datetime, tolerance_minutes: int):
        if captured is None:
            return CheckOutcome.UNKNOWN, CheckOutcome.UNKNOWN, None

        local_capture = self.clock.localize(captured)
        date_check = CheckOutcome.VALID if local_capture.date() == now.date() else CheckOutcome.INVALID

        drift = abs((now - local_capture).total_seconds()) / 60.0
        time_check = CheckOutcome.VALID if drift <= tolerance_minutes else CheckOutcome.INVALID
        if time_check == CheckOutcome.INVALID:
            logger.warning(f"Capture time {local_capture.isoformat()} is {drift:.1f} min from submission")
        return date_check, time_check, round(drift, 2)

    def _check_location(self, metadata: CaptureMetadata, config: AdmissionWindowConfig):
        if not config.geofence_enabled:
            return CheckOutcome.VALID, None
        if config.reference_latitude is None or config.reference_longitude is None:
            logger.warning(f"Geofence enabled on '{config.name}' without a reference point; skipping")
            return CheckOutcome.VALID, None
        if not metadata.has_gps:
            return CheckOutcome.UNKNOWN, None

        distance = haversine_distance(
            metadata.capture_latitude,
            metadata.capture_longitude,
            config.reference_latitude,
            config.reference_longitude,
        )
        outcome = CheckOutcome.VALID if distance <= config.geofence_radius_meters else CheckOutcome.INVALID
        if outcome == CheckOutcome.INVALID:
            logger.warning(
                f"Capture location {distance:.1f} m from reference (radius {config.geofence_radius_meters} m)"
            )
        return outcome, round(distance, 2)

    def _check_software(self, software: Optional[str]) -> CheckOutcome:
        if not software:
            return CheckOutcome.UNKNOWN
        lowered = software.lower()
        for fragment in self.editing_software_denylist:
            if fragment in lowered:
                logger.warning(f"Editing software detected in metadata: {software!r}")
                return CheckOutcome.INVALID
        return CheckOutcome.VALID
