import io
import random
import time
from datetime import datetime

import pytest
from PIL import Image
from PIL.TiffImagePlugin import IFDRational

from room_inspection.config import rules
from room_inspection.config.settings import ScoringConfig
from room_inspection.orchestration.runner import InspectionPipeline
from room_inspection.storage.blob_store import LocalBlobStore
from room_inspection.storage.sqlite_store import InspectionStore
from room_inspection.utils.clock import FixedClock
from room_inspection.validators.admission_gate import default_admission_config
from room_inspection.validators.forensic_validator import ForensicValidator
from room_inspection.validators.scoring_client import ScoringClient, ScoringTransport

# A Monday, inside the default 21:00 ~ 23:59 window
SUBMIT_AT = datetime(2026, 10, 19, 22, 0)


def text_payload(text: str, finish_reason: str = "STOP") -> dict:
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": finish_reason,
            }
        ]
    }


def _dms(value: float):
    degrees = int(value)
    minutes_float = (value - degrees) * 60
    minutes = int(minutes_float)
    seconds = round((minutes_float - minutes) * 60, 2)
    return (IFDRational(degrees), IFDRational(minutes), IFDRational(seconds))


def make_jpeg(captured_at=None, software=None, latitude=None, longitude=None, original=False) -> bytes:
    """Small JPEG with the given EXIF fields; any field left None is omitted."""
    image = Image.new("RGB", (64, 48), (210, 200, 190))
    exif = Image.Exif()
    if captured_at is not None:
        stamp = captured_at.strftime("%Y:%m:%d %H:%M:%S")
        if original:
            exif[0x8769] = {0x9003: stamp}
        else:
            exif[0x0132] = stamp
    if software is not None:
        exif[0x0131] = software
    if latitude is not None and longitude is not None:
        exif[0x8825] = {
            1: "N" if latitude >= 0 else "S",
            2: _dms(abs(latitude)),
            3: "E" if longitude >= 0 else "W",
            4: _dms(abs(longitude)),
        }
    buf = io.BytesIO()
    image.save(buf, format="JPEG", exif=exif)
    return buf.getvalue()


class FakeTransport(ScoringTransport):
    """Answers scene and scoring prompts with canned payloads."""

    def __init__(self, score_payload=None, scene_payload=None, delay=0.0, error=None, template_payload=None):
        self.score_payload = score_payload if score_payload is not None else text_payload("SCORE: 8\nBed is made and the floor is clear.")
        self.scene_payload = scene_payload if scene_payload is not None else text_payload("SCENE: ROOM")
        self.template_payload = template_payload if template_payload is not None else text_payload("SCORE: 9\nAs tidy as the reference room.")
        self.delay = delay
        self.error = error
        self.calls = []
        self.references = []

    def generate(self, image_bytes, mime_type, prompt, max_output_tokens, timeout_seconds, reference_image=None):
        if prompt == rules.SCENE_PROMPT:
            kind = "scene"
        elif prompt == rules.TEMPLATE_SCORING_PROMPT:
            kind = "template"
        else:
            kind = "score"
        self.calls.append(kind)
        self.references.append(reference_image)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if kind == "scene":
            return self.scene_payload
        return self.template_payload if kind == "template" else self.score_payload

    def count(self, kind):
        return self.calls.count(kind)


@pytest.fixture()
def clock():
    return FixedClock(SUBMIT_AT)


@pytest.fixture()
def store(tmp_path):
    store = InspectionStore(tmp_path / "inspection_test.db")
    store.create_tables()
    store.ensure_default_config(default_admission_config)
    return store


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def scoring_client(transport):
    client = ScoringClient(ScoringConfig(timeout_seconds=2.0), transport=transport, rng=random.Random(7))
    yield client
    client.close()


@pytest.fixture()
def pipeline(store, tmp_path, scoring_client, clock):
    return InspectionPipeline(
        store=store,
        blob_store=LocalBlobStore(tmp_path / "photos"),
        scoring_client=scoring_client,
        clock=clock,
        forensic_validator=ForensicValidator(clock),
    )


@pytest.fixture()
def fresh_photo():
    """Photo captured five minutes before the submission."""
    return make_jpeg(captured_at=datetime(2026, 10, 19, 21, 55), software="iOS 17.4")
