from datetime import date, datetime, timezone

import pytest

from conftest import make_jpeg
from room_inspection.config.settings import PipelineSettings, ScoringConfig
from room_inspection.storage.blob_store import LocalBlobStore
from room_inspection.utils.circuit_breaker import CircuitBreaker, CircuitState
from room_inspection.utils.clock import Clock, FixedClock
from room_inspection.utils.concurrency import ConcurrencyGuard
from room_inspection.utils.hashing import compute_sha256, short_digest


class FakeTime:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_circuit_breaker_opens_then_recovers():
    clock = FakeTime()
    breaker = CircuitBreaker(min_errors_to_open=3, min_requests=3, cooldown_duration=30, time_func=clock)
    for _ in range(3):
        breaker.record_error()
    assert breaker.get_state() == CircuitState.OPEN
    assert not breaker.can_proceed()

    clock.now = 31
    assert breaker.can_proceed()
    assert breaker.get_state() == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.get_state() == CircuitState.CLOSED


def test_circuit_breaker_half_open_failure_reopens():
    clock = FakeTime()
    breaker = CircuitBreaker(min_errors_to_open=1, min_requests=1, cooldown_duration=10, time_func=clock)
    breaker.record_error()
    clock.now = 11
    assert breaker.can_proceed()
    breaker.record_error()
    assert breaker.get_state() == CircuitState.OPEN


def test_circuit_breaker_stays_closed_below_threshold():
    breaker = CircuitBreaker(min_errors_to_open=3, min_requests=4)
    breaker.record_error()
    breaker.record_success()
    breaker.record_success()
    breaker.record_error()
    assert breaker.get_state() == CircuitState.CLOSED
    assert breaker.get_stats()["error_rate"] == 0.5


def test_concurrency_guard_limits_slots():
    guard = ConcurrencyGuard(max_concurrent=1)
    with guard.slot() as first:
        assert first
        assert guard.in_flight == 1
        with guard.slot(timeout=0.05) as second:
            assert not second
    assert guard.in_flight == 0


def test_clock_localizes_into_zone():
    clock = Clock("Asia/Seoul")
    aware = clock.localize(datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc))
    assert (aware.day, aware.hour) == (20, 0)
    assert clock.today(datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)) == date(2026, 10, 20)


def test_fixed_clock_advance():
    clock = FixedClock(datetime(2026, 10, 19, 23, 50))
    clock.advance(minutes=15)
    assert clock.today() == date(2026, 10, 20)


def test_hashing():
    assert compute_sha256(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert short_digest(b"abc") == "ba7816bf8f01cfea"


def test_blob_store_round_trip(tmp_path):
    blobs = LocalBlobStore(tmp_path)
    photo = make_jpeg()
    ref = blobs.store(photo, "s1/../x", date(2026, 10, 19))
    assert ref.startswith("2026-10-19/s1_.._x_")
    assert ref.endswith(".jpg")
    assert blobs.read(ref) == photo

    blobs.delete(ref)
    blobs.delete(ref)
    assert not (tmp_path / ref).exists()

    with pytest.raises(ValueError):
        blobs.read("../outside.jpg")


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("PASS_THRESHOLD", "7")
    monkeypatch.setenv("STRICT_METADATA", "yes")
    monkeypatch.setenv("EDITING_SOFTWARE_DENYLIST", "Foo, Bar")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("SCORING_FALLBACK_ENABLED", "false")
    monkeypatch.setenv("SCORING_TIMEOUT_SECONDS", "12.5")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    settings = PipelineSettings.from_env()
    assert settings.pass_threshold == 7
    assert settings.strict_metadata
    assert settings.editing_software_denylist == ("foo", "bar")
    assert settings.database_path == tmp_path / "x.db"
    assert not settings.scoring.fallback_enabled
    assert settings.scoring.timeout_seconds == 12.5
    assert settings.scoring.api_key is None


def test_scoring_config_rejects_bad_timeout():
    with pytest.raises(ValueError):
        ScoringConfig(timeout_seconds=0)
