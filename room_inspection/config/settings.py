"""Environment driven settings for the pipeline and the scoring client."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from room_inspection.config import rules

# Load environment variables from .env file
load_dotenv()


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: Optional[str]) -> Optional[Tuple[str, ...]]:
    if value is None or value.strip() == "":
        return None
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


@dataclass
class ScoringConfig:
    """Settings for calls to the external image-scoring service."""
    api_key: Optional[str] = None
    model: str = "gemini-2.5-flash"
    timeout_seconds: float = 45.0
    max_output_tokens: int = 2048
    temperature: float = 0.1
    top_p: float = 0.8
    top_k: int = 10
    fallback_enabled: bool = True
    fallback_min_score: int = 6
    fallback_max_score: int = 8
    default_score: int = 7
    max_concurrent: int = 4
    breaker_error_threshold: float = 0.5
    breaker_window_seconds: float = 60.0
    breaker_cooldown_seconds: float = 30.0
    breaker_min_errors: int = 5

    def __post_init__(self):
        if self.fallback_min_score > self.fallback_max_score:
            raise ValueError(
                f"fallback range is empty: {self.fallback_min_score}..{self.fallback_max_score}"
            )
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "ScoringConfig":
        return cls(
            api_key=os.getenv("GEMINI_API_KEY") or None,
            model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            timeout_seconds=float(os.getenv("SCORING_TIMEOUT_SECONDS", "45")),
            max_output_tokens=int(os.getenv("SCORING_MAX_OUTPUT_TOKENS", "2048")),
            temperature=float(os.getenv("SCORING_TEMPERATURE", "0.1")),
            fallback_enabled=_parse_bool(os.getenv("SCORING_FALLBACK_ENABLED"), True),
            fallback_min_score=int(os.getenv("SCORING_FALLBACK_MIN", "6")),
            fallback_max_score=int(os.getenv("SCORING_FALLBACK_MAX", "8")),
            default_score=int(os.getenv("SCORING_DEFAULT_SCORE", "7")),
            max_concurrent=int(os.getenv("SCORING_MAX_CONCURRENT", "4")),
            breaker_error_threshold=float(os.getenv("SCORING_CIRCUIT_BREAKER_THRESHOLD", "0.5")),
            breaker_window_seconds=float(os.getenv("SCORING_CIRCUIT_BREAKER_WINDOW", "60")),
            breaker_cooldown_seconds=float(os.getenv("SCORING_CIRCUIT_BREAKER_COOLDOWN", "30")),
            breaker_min_errors=int(os.getenv("SCORING_CIRCUIT_BREAKER_MIN_ERRORS", "5")),
        )


@dataclass
class PipelineSettings:
    """Settings for the inspection pipeline, storage and logging."""
    timezone: str = "Asia/Seoul"
    pass_threshold: int = rules.PASS_THRESHOLD
    forensic_penalty: int = rules.FORENSIC_PENALTY
    strict_metadata: bool = False
    editing_software_denylist: Tuple[str, ...] = rules.EDITING_SOFTWARE_DENYLIST
    database_path: Path = Path("data/room_inspection.db")
    blob_directory: Path = Path("data/photos")
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        log_file = os.getenv("LOG_FILE")
        return cls(
            timezone=os.getenv("INSPECTION_TIMEZONE", "Asia/Seoul"),
            pass_threshold=int(os.getenv("PASS_THRESHOLD", str(rules.PASS_THRESHOLD))),
            forensic_penalty=int(os.getenv("FORENSIC_PENALTY", str(rules.FORENSIC_PENALTY))),
            strict_metadata=_parse_bool(os.getenv("STRICT_METADATA"), False),
            editing_software_denylist=(
                _parse_list(os.getenv("EDITING_SOFTWARE_DENYLIST")) or rules.EDITING_SOFTWARE_DENYLIST
            ),
            database_path=Path(os.getenv("DATABASE_PATH", "data/room_inspection.db")),
            blob_directory=Path(os.getenv("BLOB_DIRECTORY", "data/photos")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=Path(log_file) if log_file else None,
            scoring=ScoringConfig.from_env(),
        )
