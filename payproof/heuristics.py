"""Informational image heuristics: EXIF, aspect ratio, resolution, text density.

None of these checks can reject a proof on its own. Their anomalies only
steer a verdict towards manual review; screenshots routinely lack EXIF data.
"""

import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from PIL import Image, ExifTags

from .config import Config

logger = logging.getLogger(__name__)

EDGE_THRESHOLD = 30
SAMPLE_WIDTH = 540
MIN_ROW_EDGES = 2

# Anomaly codes
EDITOR_DETECTED = "editor_detected"
UNUSUAL_ASPECT_RATIO = "unusual_aspect_ratio"
LANDSCAPE = "landscape_orientation"
LOW_RESOLUTION = "low_resolution"
HIGH_RESOLUTION = "high_resolution"
LOW_TEXT_DENSITY = "low_text_density"
EXIF_MISSING = "exif_missing"


@dataclass
class ExifSummary:
    available: bool = False
    source_type: str = "unknown"
    editor_detected: Optional[str] = None
    creation_date: Optional[str] = None
    notes: str = ""


@dataclass
class ScreenshotSummary:
    looks_like_screenshot: bool = False
    aspect_ratio: str = "Unknown"
    width: int = 0
    height: int = 0
    text_density_score: int = 0
    anomalies: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


@dataclass
class HeuristicsReport:
    exif: ExifSummary
    screenshot: ScreenshotSummary

    @property
    def anomalies(self) -> List[str]:
        codes = list(self.screenshot.anomalies)
        if self.exif.editor_detected:
            codes.insert(0, EDITOR_DETECTED)
        return codes


def _exif_text(exif, tag_name: str) -> str:
    tag_id = next((k for k, v in ExifTags.TAGS.items() if v == tag_name), None)
    if tag_id is None:
        return ""
    value = exif.get(tag_id)
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    return str(value).strip("\x00 ") if value else ""


def classify_aspect_ratio(width: int, height: int):
    """Return ``(label, looks_like_screenshot, explanation)`` for portrait-ratio buckets."""
    if width <= 0 or height <= 0:
        return "Unknown", False, "Image has no dimensions"

    ratio = height / width
    if 1.7 <= ratio <= 1.9:
        return "9:16 (Standard)", True, "Standard mobile screenshot aspect ratio"
    if 2.0 <= ratio <= 2.3:
        return "9:19.5 (Tall)", True, "Modern tall mobile screenshot"
    if 1.3 <= ratio <= 1.6:
        return "3:4 or 9:13", True, "Tablet or older mobile screenshot"
    if ratio < 1.0:
        return "Landscape", False, "Payment screenshots are typically portrait mode"
    return f"Unusual ({ratio:.2f})", False, "Non-standard aspect ratio for a mobile screenshot"


def estimate_text_density(img: Image.Image) -> int:
    """Percentage of sample rows crossed by strong gradient edges, 0-100.

    Text lines show up as bands of rows with sharp light/dark transitions;
    flat backgrounds contribute nothing.
    """
    width, height = img.size
    scale = min(1.0, SAMPLE_WIDTH / max(width, 1))
    size = (max(2, round(width * scale)), max(2, round(height * scale)))
    sample = np.asarray(img.convert("L").resize(size), dtype=np.int16)

    corner = sample[:-1, :-1]
    strong = (np.abs(sample[:-1, 1:] - corner) > EDGE_THRESHOLD) | \
             (np.abs(sample[1:, :-1] - corner) > EDGE_THRESHOLD)
    text_rows = np.count_nonzero(strong.sum(axis=1) >= MIN_ROW_EDGES)
    return int(round(text_rows / strong.shape[0] * 100))


class ImageHeuristicsAnalyzer:
    """Collects metadata and layout signals for one proof image."""

    def __init__(self, config: Config):
        self.config = config

    def analyze_exif(self, img: Image.Image) -> ExifSummary:
        exif = img.getexif()
        if not exif:
            return ExifSummary(
                notes="No EXIF metadata found (common for screenshots or web-saved images)"
            )

        summary = ExifSummary(available=True)
        software = _exif_text(exif, "Software") or _exif_text(exif, "ProcessingSoftware")
        make = _exif_text(exif, "Make")
        model = _exif_text(exif, "Model")
        summary.creation_date = _exif_text(exif, "DateTime") or None

        software_lower = software.lower()
        if "screenshot" in software_lower:
            summary.source_type = "screenshot"
            summary.notes = "Image contains screenshot metadata"
        elif any(sig in software_lower for sig in self.config.heuristics.editor_signatures):
            summary.source_type = "edited"
            summary.editor_detected = software
            summary.notes = f"Image edited with: {software}"
        elif make or model:
            summary.source_type = "camera"
            summary.notes = f"Photo taken with: {make} {model}".strip()
        elif software:
            summary.source_type = "screenshot"
            summary.notes = f"Created by: {software}"
        return summary

    def analyze_layout(self, img: Image.Image) -> ScreenshotSummary:
        cfg = self.config.heuristics
        width, height = img.size
        label, looks_like_screenshot, explanation = classify_aspect_ratio(width, height)

        summary = ScreenshotSummary(
            looks_like_screenshot=looks_like_screenshot,
            aspect_ratio=label,
            width=width,
            height=height,
            notes=[explanation],
        )
        if not looks_like_screenshot:
            summary.anomalies.append(LANDSCAPE if label == "Landscape" else UNUSUAL_ASPECT_RATIO)

        if width < cfg.min_width or height < cfg.min_height:
            summary.looks_like_screenshot = False
            summary.anomalies.append(LOW_RESOLUTION)
            summary.notes.append("Very low resolution")
        elif width > cfg.max_width or height > cfg.max_height:
            summary.anomalies.append(HIGH_RESOLUTION)
            summary.notes.append("Unusually high resolution")

        summary.text_density_score = estimate_text_density(img)
        if summary.text_density_score < cfg.min_text_density:
            summary.anomalies.append(LOW_TEXT_DENSITY)
            summary.notes.append(f"Low text density ({summary.text_density_score})")
        return summary

    def analyze(self, image_data: bytes) -> HeuristicsReport:
        with Image.open(io.BytesIO(image_data)) as img:
            exif = self.analyze_exif(img)
            layout = self.analyze_layout(img)

        report = HeuristicsReport(exif=exif, screenshot=layout)
        logger.info(f"Heuristics: {layout.aspect_ratio}, {layout.width}x{layout.height}, "
                    f"density {layout.text_density_score}, exif={exif.available}, "
                    f"anomalies={report.anomalies or 'none'}")
        return report
