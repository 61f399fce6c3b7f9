"""OCR engine abstraction and primary/fallback orchestration."""

import base64
import io
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Optional

import httpx
import pytesseract
from PIL import Image

from .config import Config
from .models import OcrResult, OcrOutcome

logger = logging.getLogger(__name__)

BOTH_FAILED = "both_failed"
GOOGLE_VISION_URL = "https://vision.googleapis.com/v1/images:annotate"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class OcrEngine(ABC):
    """Abstract base class for text-recognition engines.

    Implementations must not raise: failures are reported through
    ``OcrResult.error``.
    """

    name: str = "engine"

    @abstractmethod
    def recognize(self, image_data: bytes) -> OcrResult:
        """Extract text from image bytes."""
        pass


class GoogleVisionEngine(OcrEngine):
    """Authenticated, rate-limited primary engine (Google Cloud Vision)."""

    name = "google_vision"

    def __init__(self, config: Config, http_client: Optional[httpx.Client] = None):
        self.config = config
        self.http_client = http_client or httpx.Client(
            timeout=config.ocr.primary_timeout_seconds
        )

    def _load_key(self) -> Optional[str]:
        try:
            return self.config.get_ocr_api_key() or None
        except OSError as e:
            logger.warning(f"Primary OCR credentials unavailable: {e}")
            return None

    def recognize(self, image_data: bytes) -> OcrResult:
        start = time.monotonic()
        api_key = self._load_key()
        if not api_key:
            return OcrResult(engine_name=self.name, error="missing API key")

        payload = {
            "requests": [{
                "image": {"content": base64.b64encode(image_data).decode("utf-8")},
                "features": [{"type": "TEXT_DETECTION", "maxResults": 1}],
            }]
        }
        try:
            response = self.http_client.post(
                GOOGLE_VISION_URL, params={"key": api_key}, json=payload
            )
            response.raise_for_status()
            text, confidence = parse_vision_response(response.json())
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Google Vision error: {e}")
            return OcrResult(
                engine_name=self.name,
                processing_time_ms=_elapsed_ms(start),
                error=str(e) or e.__class__.__name__,
            )

        elapsed = _elapsed_ms(start)
        logger.info(f"Google Vision completed in {elapsed}ms ({len(text)} chars, confidence {confidence})")
        return OcrResult(
            engine_name=self.name,
            text=text,
            confidence=confidence,
            processing_time_ms=elapsed,
        )


def parse_vision_response(data: dict) -> tuple:
    """Return ``(text, confidence)`` from an ``images:annotate`` response.

    Confidence is the mean word confidence scaled to 0-100; a response with
    text but without word confidences is scored 90.
    """
    responses = data.get("responses") or [{}]
    first = responses[0]
    if "error" in first:
        raise ValueError(first["error"].get("message", "Vision API error"))

    annotations = first.get("textAnnotations") or []
    if not annotations:
        return "", 0.0

    text = annotations[0].get("description", "")
    word_confidences = []
    for page in first.get("fullTextAnnotation", {}).get("pages", []):
        for block in page.get("blocks", []):
            for paragraph in block.get("paragraphs", []):
                for word in paragraph.get("words", []):
                    if word.get("confidence"):
                        word_confidences.append(word["confidence"] * 100)

    if word_confidences:
        confidence = round(sum(word_confidences) / len(word_confidences))
    else:
        confidence = 90
    return text, float(max(0, min(100, confidence)))


class TesseractEngine(OcrEngine):
    """Local, unauthenticated fallback engine."""

    name = "tesseract"

    def __init__(self, config: Config):
        self.config = config

    def recognize(self, image_data: bytes) -> OcrResult:
        start = time.monotonic()
        try:
            with Image.open(io.BytesIO(image_data)) as img:
                data = pytesseract.image_to_data(
                    img.convert("RGB"),
                    lang=self.config.ocr.fallback_language,
                    output_type=pytesseract.Output.DICT,
                )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            logger.warning(f"Tesseract error: {e}")
            return OcrResult(
                engine_name=self.name,
                processing_time_ms=_elapsed_ms(start),
                error=str(e) or e.__class__.__name__,
            )

        text, confidence = assemble_tesseract_text(data)
        elapsed = _elapsed_ms(start)
        logger.info(f"Tesseract completed in {elapsed}ms ({len(text)} chars, confidence {confidence})")
        return OcrResult(
            engine_name=self.name,
            text=text,
            confidence=confidence,
            processing_time_ms=elapsed,
        )


def assemble_tesseract_text(data: dict) -> tuple:
    """Rebuild line-broken text and mean word confidence from ``image_to_data`` output."""
    lines = {}
    confidences = []
    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        conf = float(data["conf"][i])
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = round(sum(confidences) / len(confidences), 1) if confidences else 0.0
    return text, max(0.0, min(100.0, confidence))


def select_winner(primary: OcrResult, fallback: Optional[OcrResult]) -> str:
    """Pick the winning engine name, or ``both_failed``.

    Usable results are compared on ``(confidence, text_length)``; the primary
    engine wins exact ties.
    """
    candidates = [r for r in (primary, fallback) if r is not None and r.usable]
    if not candidates:
        return BOTH_FAILED

    best = candidates[0]
    for candidate in candidates[1:]:
        if (candidate.confidence, len(candidate.text)) > (best.confidence, len(best.text)):
            best = candidate
    return best.engine_name


class OcrOrchestrator:
    """Runs the primary engine under a timeout and falls back to the local engine."""

    def __init__(self, config: Config, primary: OcrEngine, fallback: OcrEngine,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.config = config
        self.primary = primary
        self.fallback = fallback
        # Timed-out primary calls keep running here; their results are dropped.
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="ocr-primary"
        )

    def _run_primary(self, image_data: bytes) -> OcrResult:
        timeout = self.config.ocr.primary_timeout_seconds
        future = self._executor.submit(self.primary.recognize, image_data)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning(f"Primary OCR ({self.primary.name}) timed out after {timeout}s")
            return OcrResult(
                engine_name=self.primary.name,
                processing_time_ms=int(timeout * 1000),
                error=f"timed out after {timeout}s",
            )
        except Exception as e:
            # Engines report errors as data; anything escaping is a bug in the engine.
            logger.error(f"Primary OCR ({self.primary.name}) raised: {e}")
            return OcrResult(engine_name=self.primary.name, error=str(e) or e.__class__.__name__)

    def _run_fallback(self, image_data: bytes) -> OcrResult:
        try:
            return self.fallback.recognize(image_data)
        except Exception as e:
            logger.error(f"Fallback OCR ({self.fallback.name}) raised: {e}")
            return OcrResult(engine_name=self.fallback.name, error=str(e) or e.__class__.__name__)

    def run(self, image_data: bytes) -> OcrOutcome:
        primary_result = self._run_primary(image_data)

        fallback_result = None
        if self.config.ocr.always_run_fallback or not primary_result.usable:
            if not primary_result.usable:
                logger.info(
                    f"Primary OCR unusable ({primary_result.error or 'empty text'}), "
                    f"running {self.fallback.name}"
                )
            fallback_result = self._run_fallback(image_data)

        winner = select_winner(primary_result, fallback_result)
        if winner == BOTH_FAILED:
            logger.warning("Both OCR engines failed to produce text")
            return OcrOutcome(primary=primary_result, fallback=fallback_result, winner=winner)

        chosen = primary_result if winner == primary_result.engine_name else fallback_result
        return OcrOutcome(
            primary=primary_result,
            fallback=fallback_result,
            winner=winner,
            winner_text=chosen.text,
            winner_confidence=chosen.confidence,
        )

    def shutdown(self):
        self._executor.shutdown(wait=False)


def create_ocr_orchestrator(config: Config) -> OcrOrchestrator:
    """Factory function wiring the configured primary engine to the local fallback."""
    if config.ocr.primary_engine.lower() != "google_vision":
        raise ValueError(f"Unsupported primary OCR engine: {config.ocr.primary_engine}")
    return OcrOrchestrator(config, GoogleVisionEngine(config), TesseractEngine(config))
