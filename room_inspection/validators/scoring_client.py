"""Client for the external image-scoring service (Gemini vision) with local fallback."""
import logging
import random
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional, Tuple

from google import genai
from google.genai import errors, types

from room_inspection.config import rules
from room_inspection.config.settings import ScoringConfig
from room_inspection.extractors.image_extractor import detect_mime_type
from room_inspection.types import (
    Blocked,
    Errored,
    Partial,
    SceneCheck,
    ScoringOutcome,
    ScoringResult,
    Success,
)
from room_inspection.utils.circuit_breaker import CircuitBreaker
from room_inspection.utils.concurrency import ConcurrencyGuard

logger = logging.getLogger(__name__)

# How often a waiting caller wakes up to look at its cancel event
POLL_INTERVAL_SECONDS = 0.25

TRUNCATED_FINISH_REASONS = ("MAX_TOKENS",)
SAFETY_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY")

_SCENE_PATTERN = re.compile(r"SCENE\s*:\s*([A-Za-z_]+)", re.IGNORECASE)
_INTEGER_PATTERN = re.compile(r"\d+")


class ScoringTransport:
    """Sends one image + prompt to the scoring service.

    Implementations return the service's REST-shaped JSON payload
    (``error``, ``promptFeedback``, ``candidates``) and may raise on
    transport failures; the client treats both uniformly.
    ``reference_image``, when given, is sent ahead of the submitted photo.
    """

    def generate(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: str,
        max_output_tokens: int,
        timeout_seconds: float,
        reference_image: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError


class GeminiTransport(ScoringTransport):
    """Transport backed by the google-genai SDK."""

    def __init__(self, config: ScoringConfig):
        self.config = config
        self.model = config.model
        self.client = genai.Client(
            api_key=config.api_key,
            http_options=types.HttpOptions(timeout=int(config.timeout_seconds * 1000)),
        )
        logger.info(f"Gemini transport initialized. Model: {self.model}")

    def generate(self, image_bytes, mime_type, prompt, max_output_tokens, timeout_seconds, reference_image=None):
        parts = [types.Part.from_text(text=prompt)]
        if reference_image is not None:
            parts.append(types.Part.from_bytes(data=reference_image, mime_type=detect_mime_type(reference_image)))
        parts.append(types.Part.from_bytes(data=image_bytes, mime_type=mime_type))
        contents = [types.Content(role="user", parts=parts)]
        generation_config = types.GenerateContentConfig(
            max_output_tokens=max_output_tokens,
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            top_k=self.config.top_k,
        )
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=contents,
                config=generation_config,
            )
        except errors.APIError as e:
            return {"error": {"code": e.code, "status": e.status, "message": e.message or str(e)}}
        return response.model_dump(mode="json", by_alias=True, exclude_none=True)


def _clamp(value: int, low: int = rules.MIN_SCORE, high: int = rules.MAX_SCORE) -> int:
    return max(low, min(high, value))


def parse_score_text(text: str, default_score: int) -> Tuple[int, str]:
    """Pull the score out of model text and return (score, remaining feedback).

    The score is the first integer on the first line that mentions a score
    marker and carries a number. Without one, ``default_score`` is used.
    """
    lines = text.strip().splitlines()
    score = None
    score_line = None
    for index, line in enumerate(lines):
        lowered = line.lower()
        if not any(marker in lowered for marker in rules.SCORE_MARKERS):
            continue
        match = _INTEGER_PATTERN.search(line)
        if match:
            score = _clamp(int(match.group()))
            score_line = index
            break

    if score is None:
        logger.warning(f"No score marker in scoring response, using default {default_score}")
        score = _clamp(default_score)

    remaining = [line for index, line in enumerate(lines) if index != score_line]
    feedback = "\n".join(remaining).strip()
    return score, feedback or rules.DEFAULT_FEEDBACK


def read_scoring_text(text: str, default_score: int) -> Tuple[int, str, bool]:
    """Return (score, feedback, not_inspectable) for a model answer.

    An answer carrying the not-inspectable marker scores 0 with feedback
    naming what the photo shows instead of a room.
    """
    marker_at = text.upper().find(rules.NOT_INSPECTABLE_MARKER)
    if marker_at >= 0:
        rest = text[marker_at + len(rules.NOT_INSPECTABLE_MARKER):].strip().splitlines()
        detail = rest[0].strip() if rest and rest[0].strip() else "not a dormitory room"
        return 0, f"The photo cannot be inspected: {detail}", True
    score, feedback = parse_score_text(text, default_score)
    return score, feedback, False


class ScoringClient:
    """Scores inspection photos through a ``ScoringTransport``.

    Every call is bounded by ``config.timeout_seconds``, guarded by a circuit
    breaker and a concurrency limit, and never raises: failures become a
    fallback result (or a zero score when fallback is disabled).
    """

    def __init__(
        self,
        config: ScoringConfig,
        transport: Optional[ScoringTransport] = None,
        rng: Optional[random.Random] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        concurrency_guard: Optional[ConcurrencyGuard] = None,
    ):
        self.config = config
        if transport is None and config.api_key:
            transport = GeminiTransport(config)
        if transport is None:
            logger.warning("Scoring service not configured. Set GEMINI_API_KEY environment variable.")
        self.transport = transport
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            error_threshold=config.breaker_error_threshold,
            window_duration=config.breaker_window_seconds,
            cooldown_duration=config.breaker_cooldown_seconds,
            min_errors_to_open=config.breaker_min_errors,
            name="scoring",
        )
        self.concurrency_guard = concurrency_guard or ConcurrencyGuard(config.max_concurrent, name="scoring")
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent,
            thread_name_prefix="scoring",
        )
        self._stats_lock = threading.Lock()
        self._stats = {"calls": 0, "succeeded": 0, "partial": 0, "fallbacks": 0}

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def parse_response(self, payload: Any, read_score: bool = True) -> ScoringOutcome:
        """Classify a service payload: error, safety block, no candidate, truncated, or success.

        With ``read_score`` off the Success carries only the raw text.
        """
        if not isinstance(payload, dict):
            return Errored(f"malformed payload: {type(payload).__name__}")

        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return Errored(f"service error: {message or error}")

        feedback = payload.get("promptFeedback") or {}
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            return Blocked(f"prompt blocked: {block_reason}")

        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return Errored("no candidates in response")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        content = candidate.get("content")
        parts = (content.get("parts") or []) if isinstance(content, dict) else []
        text = "".join(
            part.get("text", "") for part in parts
            if isinstance(part, dict) and not part.get("thought")
        ).strip()

        if finish_reason in TRUNCATED_FINISH_REASONS:
            if text:
                return Partial(text)
            return Errored("response truncated before any text was produced")

        if not text:
            if finish_reason in SAFETY_FINISH_REASONS:
                return Blocked(f"candidate blocked: {finish_reason}")
            return Errored(f"empty candidate (finish reason {finish_reason})")

        if not read_score:
            return Success(score=0, feedback="", text=text)
        score, feedback, not_inspectable = read_scoring_text(text, self.config.default_score)
        return Success(score=score, feedback=feedback, text=text, not_inspectable=not_inspectable)

    def interpret(self, outcome: ScoringOutcome) -> ScoringResult:
        """Turn a parsed outcome into a score, falling back on failure."""
        if isinstance(outcome, Success):
            return ScoringResult(
                numeric_score=outcome.score,
                feedback=outcome.feedback,
                succeeded=True,
                not_inspectable=outcome.not_inspectable,
                outcome=outcome,
            )
        if isinstance(outcome, Partial):
            score, feedback, not_inspectable = read_scoring_text(outcome.text, self.config.default_score)
            return ScoringResult(
                numeric_score=score,
                feedback=f"{feedback} {rules.PARTIAL_FEEDBACK_NOTE}",
                succeeded=True,
                partial=True,
                not_inspectable=not_inspectable,
                outcome=outcome,
            )
        return self.fallback(outcome)

    def fallback(self, outcome: ScoringOutcome) -> ScoringResult:
        """Provisional result used when real scoring failed. Never raises."""
        reason = getattr(outcome, "reason", "unknown failure")
        if not self.config.fallback_enabled:
            logger.warning(f"Scoring failed and fallback is disabled: {reason}")
            return ScoringResult(
                numeric_score=0,
                feedback=f"Automatic analysis failed: {reason}",
                succeeded=False,
                outcome=outcome,
            )
        try:
            with self._rng_lock:
                score = self._rng.randint(self.config.fallback_min_score, self.config.fallback_max_score)
                message = self._rng.choice(rules.FALLBACK_MESSAGES)
            score = _clamp(score)
        except Exception as e:
            logger.error(f"Fallback scoring failed, using default score: {e}")
            score = _clamp(self.config.default_score)
            message = rules.FALLBACK_MESSAGES[0]
        logger.warning(f"Scoring fell back to provisional score {score}: {reason}")
        return ScoringResult(
            numeric_score=score,
            feedback=message,
            succeeded=False,
            used_fallback=True,
            outcome=outcome,
        )

    # ------------------------------------------------------------------
    # Service calls
    # ------------------------------------------------------------------

    def _invoke(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: str,
        reference_image: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        with self.concurrency_guard.slot():
            return self.transport.generate(
                image_bytes,
                mime_type,
                prompt,
                self.config.max_output_tokens,
                self.config.timeout_seconds,
                reference_image=reference_image,
            )

    def request(
        self,
        image_bytes: bytes,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
        read_score: bool = True,
        reference_image: Optional[bytes] = None,
    ) -> ScoringOutcome:
        """Call the service once within the timeout and parse the payload."""
        if self.transport is None:
            return Errored("scoring service not configured")
        if not self.circuit_breaker.can_proceed():
            return Errored("circuit breaker open")

        mime_type = detect_mime_type(image_bytes)
        timeout = self.config.timeout_seconds
        deadline = time.monotonic() + timeout
        future = self._executor.submit(self._invoke, image_bytes, mime_type, prompt, reference_image)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                logger.info("Scoring call cancelled by caller")
                return Errored("cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                self.circuit_breaker.record_error()
                logger.warning(f"Scoring call timed out after {timeout}s")
                return Errored(f"timed out after {timeout:g}s")
            try:
                payload = future.result(timeout=min(POLL_INTERVAL_SECONDS, remaining))
                break
            except FutureTimeoutError:
                continue
            except Exception as e:
                self.circuit_breaker.record_error()
                logger.warning(f"Scoring transport failed: {type(e).__name__}: {e}")
                return Errored(f"transport failure: {e}")

        outcome = self.parse_response(payload, read_score)
        if isinstance(outcome, Errored):
            self.circuit_breaker.record_error()
        else:
            self.circuit_breaker.record_success()
        return outcome

    def score(
        self,
        image_bytes: bytes,
        prompt: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScoringResult:
        """Score a room photo on a 0-10 scale with feedback text."""
        outcome = self.request(image_bytes, prompt or rules.SCORING_PROMPT, cancel_event)
        return self._record(self.interpret(outcome))

    def score_with_template(
        self,
        image_bytes: bytes,
        reference_image: Optional[bytes],
        cancel_event: Optional[threading.Event] = None,
    ) -> ScoringResult:
        """Score a photo against a reference room photo.

        Without a reference, or when the comparison call does not produce a
        usable answer, the photo is scored on its own with ``score``.
        """
        if not reference_image:
            logger.info("No reference template for comparison, scoring photo on its own")
            return self.score(image_bytes, cancel_event=cancel_event)

        outcome = self.request(
            image_bytes,
            rules.TEMPLATE_SCORING_PROMPT,
            cancel_event,
            reference_image=reference_image,
        )
        if isinstance(outcome, (Success, Partial)):
            return self._record(self.interpret(outcome))
        if cancel_event is not None and cancel_event.is_set():
            return self._record(self.interpret(outcome))

        logger.warning(f"Template comparison failed ({outcome.reason}), scoring photo on its own")
        return self.score(image_bytes, cancel_event=cancel_event)

    def _record(self, result: ScoringResult) -> ScoringResult:
        with self._stats_lock:
            self._stats["calls"] += 1
            if result.succeeded:
                self._stats["succeeded"] += 1
            if result.partial:
                self._stats["partial"] += 1
            if result.used_fallback:
                self._stats["fallbacks"] += 1
        logger.info(
            f"Scoring result: score={result.numeric_score}, succeeded={result.succeeded}, "
            f"partial={result.partial}, fallback={result.used_fallback}"
        )
        return result

    def classify_scene(
        self,
        image_bytes: bytes,
        cancel_event: Optional[threading.Event] = None,
    ) -> SceneCheck:
        """Decide whether the photo shows a room interior. Fails open."""
        outcome = self.request(image_bytes, rules.SCENE_PROMPT, cancel_event, read_score=False)
        if not isinstance(outcome, (Success, Partial)):
            logger.warning(f"Scene check unavailable, treating photo as a room: {outcome.reason}")
            return SceneCheck(is_room=True, category=rules.ROOM_SCENE, reason=f"scene check unavailable: {outcome.reason}")
        return self.parse_scene(outcome.text)

    @staticmethod
    def parse_scene(text: str) -> SceneCheck:
        match = _SCENE_PATTERN.search(text)
        if match and match.group(1).upper() in rules.SCENE_CATEGORIES:
            category = match.group(1).upper()
            return SceneCheck(
                is_room=category == rules.ROOM_SCENE,
                category=category,
                reason=f"scene classified as {rules.scene_label(category)}" if category != rules.ROOM_SCENE else "",
            )

        lowered = text.lower()
        for category, keywords in rules.EXCLUDED_SCENE_KEYWORDS.items():
            for keyword in keywords:
                if keyword in lowered:
                    return SceneCheck(
                        is_room=False,
                        category=category,
                        reason=f"scene classified as {rules.scene_label(category)}",
                    )
        return SceneCheck(is_room=True, category=rules.ROOM_SCENE)

    def diagnostics(self) -> Dict[str, Any]:
        """Configuration and health snapshot for the /health endpoint."""
        with self._stats_lock:
            stats = dict(self._stats)
        return {
            "configured": self.transport is not None,
            "transport": type(self.transport).__name__ if self.transport else None,
            "model": self.config.model,
            "timeout_seconds": self.config.timeout_seconds,
            "max_output_tokens": self.config.max_output_tokens,
            "fallback_enabled": self.config.fallback_enabled,
            "fallback_range": [self.config.fallback_min_score, self.config.fallback_max_score],
            "circuit_breaker": self.circuit_breaker.get_stats(),
            "concurrency": self.concurrency_guard.get_stats(),
            "stats": stats,
        }

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
