"""Fraud-signal aggregation into a single validation verdict."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .config import Config
from .extractor import is_negative_status
from .heuristics import EXIF_MISSING
from .models import (
    ClassificationResult, ConfidenceLevel, DocumentType, ExtractedFields,
    ImageSignal, OcrOutcome, ValidationStatus, ValidationVerdict, clamp_score,
)

logger = logging.getLogger(__name__)


@dataclass
class SignalBundle:
    """Everything the decision engine consumes for one proof."""
    ocr: OcrOutcome
    fields: ExtractedFields
    classification: ClassificationResult
    image: ImageSignal
    duplicate_count: int = 0


class DecisionEngine:
    """Deterministic rules over the signal bundle.

    Rule order:
      1. non-payment classification at or above ``reject_confidence`` -> REJECTED
      2. no text and no fields while every engine answered cleanly -> REJECTED
      3. no text and no fields because an engine errored -> MANUAL_REVIEW
      4. every auto-approval gate passes -> AUTO_APPROVED
      5. anything else -> MANUAL_REVIEW, naming the first gate that failed
    """

    def __init__(self, config: Config):
        self.config = config

    def score(self, bundle: SignalBundle) -> float:
        """Weighted blend of OCR confidence, field completeness and classification confidence."""
        cfg = self.config.decision
        total_weight = cfg.ocr_weight + cfg.fields_weight + cfg.classification_weight
        if total_weight <= 0:
            raise ValueError("Decision weights must sum to a positive value")

        blended = (
            cfg.ocr_weight * bundle.ocr.winner_confidence
            + cfg.fields_weight * bundle.fields.completeness * 100
            + cfg.classification_weight * bundle.classification.confidence_score
        ) / total_weight
        return round(clamp_score(blended), 1)

    def _approval_blockers(self, bundle: SignalBundle) -> List[str]:
        cfg = self.config.decision
        fields = bundle.fields
        classification = bundle.classification
        image = bundle.image
        blockers = []

        if bundle.image.duplicate_detected:
            blockers.append(
                f"duplicate match with {bundle.duplicate_count} prior submission"
                f"{'s' if bundle.duplicate_count != 1 else ''}"
            )
            if image.similarity_percentage < 100:
                blockers[-1] += f" (similarity {image.similarity_percentage:.0f}%)"

        if classification.failed:
            blockers.append("classification unavailable")
        elif not classification.document_type.is_payment:
            blockers.append(
                f"classification={classification.document_type.value}, "
                f"confidence {classification.confidence_score:.0f}"
            )
        elif classification.confidence_level is not ConfidenceLevel.HIGH:
            blockers.append(
                f"{classification.confidence_level.value}-confidence classification "
                f"({classification.document_type.value}, {classification.confidence_score:.0f})"
            )

        if bundle.ocr.both_failed:
            blockers.append("no OCR text")
        elif bundle.ocr.winner_confidence < cfg.high_ocr_confidence:
            blockers.append(
                f"OCR confidence {bundle.ocr.winner_confidence:.0f} "
                f"below {cfg.high_ocr_confidence:.0f} ({bundle.ocr.winner})"
            )

        missing = []
        if not fields.has_amount:
            missing.append("amount")
        if not fields.has_date:
            missing.append("date")
        has_positive_status = fields.has_status_keyword and not is_negative_status(fields.status_keyword)
        if not (fields.has_transaction_ref or has_positive_status):
            missing.append("transaction reference or status")
        if missing:
            blockers.append(f"partial field extraction (missing {', '.join(missing)})")
        if is_negative_status(fields.status_keyword):
            blockers.append(f"status keyword '{fields.status_keyword}'")

        anomalies = list(image.anomalies)
        if anomalies or not image.looks_like_screenshot:
            if not image.exif_available:
                anomalies.append(EXIF_MISSING)
            blockers.append(f"unusual image heuristics ({', '.join(anomalies) or 'not a screenshot'})")

        return blockers

    def decide(self, bundle: SignalBundle, now: Optional[datetime] = None) -> ValidationVerdict:
        cfg = self.config.decision
        now = now or datetime.now(timezone.utc)
        score = self.score(bundle)
        classification = bundle.classification

        def verdict(status: ValidationStatus, reason: str) -> ValidationVerdict:
            logger.info(f"Verdict {status.value} ({score}): {reason}")
            return ValidationVerdict(status=status, confidence_score=score, reason=reason, validated_at=now)

        if (classification.document_type is DocumentType.NON_PAYMENT_DOCUMENT
                and classification.confidence_score >= cfg.reject_confidence):
            return verdict(
                ValidationStatus.REJECTED,
                f"classification=non-payment, confidence {classification.confidence_score:.0f} → rejected",
            )

        if bundle.ocr.both_failed and bundle.fields.found_count == 0:
            if bundle.ocr.upstream_error:
                return verdict(
                    ValidationStatus.MANUAL_REVIEW,
                    "both OCR engines errored and no fields were extracted "
                    "→ manual review (absence of evidence)",
                )
            return verdict(
                ValidationStatus.REJECTED,
                "no readable text and zero payment fields extracted → rejected",
            )

        blockers = self._approval_blockers(bundle)
        if not blockers:
            return verdict(
                ValidationStatus.AUTO_APPROVED,
                f"{classification.document_type.value} with high confidence "
                f"({classification.confidence_score:.0f}), required fields found, "
                f"no duplicate → auto-approved",
            )

        reason = f"{blockers[0]} → manual review"
        if len(blockers) > 1:
            reason += f"; also: {'; '.join(blockers[1:])}"
        return verdict(ValidationStatus.MANUAL_REVIEW, reason)
