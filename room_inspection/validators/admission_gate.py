"""Admission window gate: decides whether a submission may be made right now."""
import logging
from datetime import date, datetime, time
from typing import Callable, Iterable, List, Optional

from room_inspection.config import rules
from room_inspection.types import (
    AdmissionWindowConfig,
    ALL_WEEKDAYS,
    GateResult,
    GateStatus,
    NextWindow,
    WEEKDAY_CODES,
)
from room_inspection.utils.clock import Clock

logger = logging.getLogger(__name__)

ConfigSource = Callable[[], Iterable[AdmissionWindowConfig]]


def default_admission_config() -> AdmissionWindowConfig:
    """Bootstrap window used when nothing else has been configured."""
    return AdmissionWindowConfig(
        name="Default inspection window",
        start_time=time(21, 0),
        end_time=time(23, 59),
        recurring_weekdays=ALL_WEEKDAYS,
        enabled=True,
        is_default=True,
        forensics_enabled=True,
        time_tolerance_minutes=10,
        geofence_enabled=False,
        geofence_radius_meters=100,
        photo_content_check_enabled=True,
    )


def weekday_code(day: date) -> str:
    return WEEKDAY_CODES[day.weekday()]


def describe_next_window(window: NextWindow) -> str:
    """User facing phrase for the next inspection, e.g. 'tomorrow (21:00 ~ 23:59)'."""
    label = window.config.time_range_label()
    if window.days_until == 0:
        return f"today ({label})"
    if window.days_until == 1:
        return f"tomorrow ({label})"
    return f"{window.date:%b} {window.date.day} ({label}, in {window.days_until} days)"


class AdmissionWindowGate:
    """Resolves today's inspection window and checks "now" against it.

    Resolution order: an enabled config pinned to today's date, then enabled
    weekday rules without a date, then the single default config. Configs are
    read from ``config_source`` on every evaluation so administrative edits
    take effect immediately.
    """

    def __init__(self, config_source: ConfigSource, clock: Optional[Clock] = None):
        self._config_source = config_source
        self.clock = clock or Clock()

    def _configs(self) -> List[AdmissionWindowConfig]:
        return list(self._config_source())

    def resolve(self, today: date, configs: Optional[List[AdmissionWindowConfig]] = None) -> List[AdmissionWindowConfig]:
        """Return the configs that govern ``today``, highest precedence tier only."""
        if configs is None:
            configs = self._configs()
        enabled = [config for config in configs if config.enabled]

        pinned = [config for config in enabled if config.specific_date == today]
        if pinned:
            return pinned

        code = weekday_code(today)
        recurring = [
            config for config in enabled
            if config.specific_date is None and not config.is_default and config.applies_on_weekday(code)
        ]
        if recurring:
            return recurring

        defaults = [config for config in enabled if config.is_default and config.specific_date is None]
        if len(defaults) > 1:
            logger.warning(
                f"{len(defaults)} default admission configs found, using '{defaults[0].name}'"
            )
        return defaults[:1]

    def active_config(self, now: Optional[datetime] = None) -> Optional[AdmissionWindowConfig]:
        """Today's governing config: the open one if any, otherwise the first resolved."""
        local_now = self.clock.localize(now)
        resolved = self.resolve(local_now.date())
        for config in resolved:
            if config.contains(local_now.time()):
                return config
        return resolved[0] if resolved else None

    def next_window(self, today: date, configs: Optional[List[AdmissionWindowConfig]] = None) -> Optional[NextWindow]:
        """Nearest enabled date-pinned window strictly after ``today``."""
        if configs is None:
            configs = self._configs()
        upcoming = sorted(
            (config for config in configs
             if config.enabled and config.specific_date is not None and config.specific_date > today),
            key=lambda config: (config.specific_date, config.start_time),
        )
        if not upcoming:
            return None
        config = upcoming[0]
        return NextWindow(
            date=config.specific_date,
            config=config,
            days_until=(config.specific_date - today).days,
        )

    def evaluate(self, now: Optional[datetime] = None) -> GateResult:
        local_now = self.clock.localize(now)
        today = local_now.date()
        moment = local_now.time()

        configs = self._configs()
        if not [config for config in configs if config.enabled]:
            logger.info("Admission check: no schedule configured")
            return GateResult(allowed=False, status=GateStatus.NO_SCHEDULE, reason=rules.NO_SCHEDULE_REASON)

        resolved = self.resolve(today, configs)
        for config in resolved:
            if config.contains(moment):
                logger.debug(f"Admission open under '{config.name}' ({config.time_range_label()})")
                return GateResult(
                    allowed=True,
                    status=GateStatus.OPEN,
                    reason=f"Inspection window open ({config.time_range_label()})",
                    active_config=config,
                )

        # A window that still opens later today takes priority over any future date
        pending = sorted(
            (config for config in resolved if moment < config.start_time),
            key=lambda config: config.start_time,
        )
        if pending:
            config = pending[0]
            return GateResult(
                allowed=False,
                status=GateStatus.NOT_YET_OPEN,
                reason=f"Inspection has not started yet. Today's window is {config.time_range_label()}.",
                active_config=config,
            )

        active = resolved[0] if resolved else None
        upcoming = self.next_window(today, configs)
        if upcoming is not None:
            reason = f"Inspection window is closed. Next inspection: {describe_next_window(upcoming)}."
        elif active is not None:
            reason = f"Inspection window is closed. Today's window was {active.time_range_label()}."
        else:
            reason = "Inspection window is closed. No inspection is scheduled for today."
        logger.info(f"Admission check at {local_now.isoformat()}: closed")
        return GateResult(
            allowed=False,
            status=GateStatus.CLOSED,
            reason=reason,
            active_config=active,
            next_window=upcoming,
        )
