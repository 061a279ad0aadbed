"""Capture metadata extraction from inspection photos."""
import io
import logging
import math
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError
from PIL.ExifTags import TAGS, GPSTAGS

from room_inspection.types import CaptureMetadata

logger = logging.getLogger(__name__)

EXIF_IFD_POINTER = 0x8769
GPS_IFD_POINTER = 0x8825

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

# (timestamp tag, matching offset tag), most trustworthy first
TIMESTAMP_TAGS: Tuple[Tuple[str, str], ...] = (
    ("DateTimeOriginal", "OffsetTimeOriginal"),
    ("DateTimeDigitized", "OffsetTimeDigitized"),
    ("DateTime", "OffsetTime"),
)


def _named(ifd: Dict[int, Any], table: Dict[int, str]) -> Dict[str, Any]:
    return {table.get(tag_id, tag_id): value for tag_id, value in ifd.items()}


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).replace("\x00", "").strip()
    return text or None


def _parse_offset(value: Any) -> Optional[tzinfo]:
    """Parse an EXIF offset such as '+09:00'."""
    text = _clean_text(value)
    if not text:
        return None
    sign = -1 if text[0] == "-" else 1
    hours, minutes = text.lstrip("+-").split(":")
    return timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))


def _parse_timestamp(value: Any, offset: Any, zone: tzinfo) -> Optional[datetime]:
    text = _clean_text(value)
    if not text:
        return None
    # Some cameras append sub-seconds or a trailing Z
    parsed = datetime.strptime(text[:19], EXIF_DATETIME_FORMAT)
    offset_zone = None
    if offset is not None:
        try:
            offset_zone = _parse_offset(offset)
        except (ValueError, IndexError) as e:
            logger.warning(f"Ignoring unreadable EXIF offset {offset!r}: {e}")
    return parsed.replace(tzinfo=offset_zone or zone)


def _gps_to_decimal(value: Any, ref: Any) -> Optional[float]:
    """Convert an EXIF (degrees, minutes, seconds) triple to signed decimal degrees."""
    if value is None:
        return None
    degrees, minutes, seconds = (float(part) for part in value)
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if not math.isfinite(decimal):
        raise ValueError(f"non-finite GPS component in {value!r}")
    ref_text = _clean_text(ref)
    if ref_text and ref_text.upper() in ("S", "W"):
        decimal = -decimal
    return decimal


def read_exif(image: Image.Image) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return (main + Exif sub-IFD tags, GPS tags) keyed by tag name."""
    exif = image.getexif()
    tags = _named(dict(exif), TAGS)
    try:
        tags.update(_named(exif.get_ifd(EXIF_IFD_POINTER), TAGS))
    except Exception as e:
        logger.warning(f"Unreadable Exif sub-IFD: {e}")
    gps: Dict[str, Any] = {}
    try:
        gps = _named(exif.get_ifd(GPS_IFD_POINTER), GPSTAGS)
    except Exception as e:
        logger.warning(f"Unreadable GPS IFD: {e}")
    return tags, gps


def extract_capture_metadata(
    source: Union[bytes, Path],
    zone: tzinfo = timezone.utc,
) -> CaptureMetadata:
    """Extract capture timestamp, GPS position and producing software.

    Every field is read independently; a corrupt field is logged and left
    as None so the remaining checks can still run.
    """
    metadata = CaptureMetadata()

    try:
        if isinstance(source, (bytes, bytearray)):
            image = Image.open(io.BytesIO(source))
        else:
            image = Image.open(source)
        with image:
            tags, gps = read_exif(image)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning(f"Could not read image metadata: {e}")
        return metadata

    metadata.raw = {key: value for key, value in tags.items() if isinstance(key, str)}
    if gps:
        metadata.raw["GPSInfo"] = gps

    for tag, offset_tag in TIMESTAMP_TAGS:
        if tag not in tags:
            continue
        try:
            metadata.capture_timestamp = _parse_timestamp(tags[tag], tags.get(offset_tag), zone)
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable {tag} {tags[tag]!r}: {e}")
            continue
        if metadata.capture_timestamp is not None:
            break

    try:
        metadata.capture_latitude = _gps_to_decimal(gps.get("GPSLatitude"), gps.get("GPSLatitudeRef"))
    except (ValueError, TypeError, ZeroDivisionError) as e:
        logger.warning(f"Ignoring unreadable GPS latitude: {e}")
    try:
        metadata.capture_longitude = _gps_to_decimal(gps.get("GPSLongitude"), gps.get("GPSLongitudeRef"))
    except (ValueError, TypeError, ZeroDivisionError) as e:
        logger.warning(f"Ignoring unreadable GPS longitude: {e}")

    try:
        metadata.editing_software_tag = _clean_text(tags.get("Software"))
    except (ValueError, TypeError) as e:
        logger.warning(f"Ignoring unreadable Software tag: {e}")

    logger.debug(
        f"Capture metadata: timestamp={metadata.capture_timestamp}, "
        f"gps={metadata.capture_latitude},{metadata.capture_longitude}, "
        f"software={metadata.editing_software_tag}"
    )
    return metadata


def detect_mime_type(data: bytes, default: str = "image/jpeg") -> str:
    """MIME type of an uploaded image as identified by Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return Image.MIME.get(image.format, default)
    except (UnidentifiedImageError, OSError, ValueError):
        return default


def is_readable_image(data: bytes) -> bool:
    """True when Pillow can identify and verify the bytes as an image."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
        return True
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
        return False
