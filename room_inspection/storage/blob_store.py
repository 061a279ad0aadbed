"""Local directory storage for submitted inspection photos."""
import logging
import re
from datetime import date
from pathlib import Path

from room_inspection.extractors.image_extractor import detect_mime_type
from room_inspection.utils.hashing import short_digest

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/gif": ".gif",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class LocalBlobStore:
    """Stores photos under ``<root>/<date>/<occupant>_<digest><ext>``.

    References handed out are paths relative to the root, so the directory can
    be moved without rewriting stored verdicts.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob reference escapes storage root: {ref}")
        return path

    def store(self, data: bytes, occupant_id: str, inspection_date: date) -> str:
        extension = MIME_EXTENSIONS.get(detect_mime_type(data), ".jpg")
        safe_occupant = _UNSAFE_CHARS.sub("_", occupant_id) or "occupant"
        ref = f"{inspection_date.isoformat()}/{safe_occupant}_{short_digest(data)}{extension}"
        path = self._resolve(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug(f"Stored photo {ref} ({len(data)} bytes)")
        return ref

    def store_template(self, data: bytes, room_type: str) -> str:
        """Reference room photos live under ``templates/`` beside the dated folders."""
        extension = MIME_EXTENSIONS.get(detect_mime_type(data), ".jpg")
        safe_type = _UNSAFE_CHARS.sub("_", room_type.lower()) or "room"
        ref = f"templates/{safe_type}_{short_digest(data)}{extension}"
        path = self._resolve(ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug(f"Stored template photo {ref} ({len(data)} bytes)")
        return ref

    def read(self, ref: str) -> bytes:
        return self._resolve(ref).read_bytes()

    def delete(self, ref: str):
        """Remove a stored photo. Missing files are ignored."""
        path = self._resolve(ref)
        try:
            path.unlink()
            logger.debug(f"Deleted photo {ref}")
        except FileNotFoundError:
            logger.debug(f"Photo {ref} already absent")
