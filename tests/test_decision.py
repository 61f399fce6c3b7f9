"""Tests for the decision engine."""

import pytest
from datetime import datetime, timezone

from payproof.config import Config
from payproof.decision import DecisionEngine, SignalBundle
from payproof.extractor import FieldExtractor
from payproof.models import (
    ClassificationResult, ConfidenceLevel, DocumentType, ExtractedFields,
    ImageSignal, OcrOutcome, OcrResult, ValidationStatus,
)

from conftest import UPI_SCREENSHOT_TEXT

NOW = datetime(2024, 3, 12, 10, 30, tzinfo=timezone.utc)


def outcome(text=UPI_SCREENSHOT_TEXT, confidence=95.0, primary_error=None, fallback=None):
    primary = OcrResult(engine_name="google_vision", text=text if not primary_error else "",
                        confidence=confidence if not primary_error else 0, error=primary_error)
    if primary.usable:
        return OcrOutcome(primary=primary, fallback=fallback, winner="google_vision",
                          winner_text=text, winner_confidence=confidence)
    if fallback is not None and fallback.usable:
        return OcrOutcome(primary=primary, fallback=fallback, winner=fallback.engine_name,
                          winner_text=fallback.text, winner_confidence=fallback.confidence)
    return OcrOutcome(primary=primary, fallback=fallback, winner="both_failed")


def classification(document_type=DocumentType.UPI_CONFIRMATION, score=92.0):
    return ClassificationResult(
        document_type=document_type,
        confidence_score=score,
        confidence_level=ConfidenceLevel.from_score(score),
    )


def clean_image(**overrides):
    values = dict(
        perceptual_hash="f0e1d2c3b4a59687",
        looks_like_screenshot=True,
        aspect_ratio="9:16 (Standard)",
        resolution_w=1080,
        resolution_h=1920,
        text_density_score=40,
    )
    values.update(overrides)
    return ImageSignal(**values)


def bundle(ocr=None, fields=None, cls=None, image=None, duplicate_count=0):
    ocr = ocr or outcome()
    return SignalBundle(
        ocr=ocr,
        fields=fields if fields is not None else FieldExtractor().extract(ocr.winner_text),
        classification=cls or classification(),
        image=image or clean_image(),
        duplicate_count=duplicate_count,
    )


@pytest.fixture
def engine():
    return DecisionEngine(Config())


def test_auto_approves_complete_upi_proof(engine):
    verdict = engine.decide(bundle(), now=NOW)

    assert verdict.status == ValidationStatus.AUTO_APPROVED
    assert verdict.confidence_score >= 80
    assert verdict.validated_at == NOW
    assert verdict.reason.endswith("→ auto-approved")


def test_score_is_weighted_blend(engine):
    # 0.3 * 95 + 0.3 * 100 + 0.4 * 92
    assert engine.score(bundle()) == 95.3


def test_score_normalises_weights():
    config = Config()
    config.decision.ocr_weight = 3
    config.decision.fields_weight = 3
    config.decision.classification_weight = 4
    assert DecisionEngine(config).score(bundle()) == 95.3


def test_zero_weights_rejected():
    config = Config()
    config.decision.ocr_weight = 0
    config.decision.fields_weight = 0
    config.decision.classification_weight = 0
    with pytest.raises(ValueError):
        DecisionEngine(config).score(bundle())


def test_confident_non_payment_is_rejected(engine):
    verdict = engine.decide(bundle(
        ocr=outcome("Sunset at the beach", 88),
        cls=classification(DocumentType.NON_PAYMENT_DOCUMENT, 90),
    ))

    assert verdict.status == ValidationStatus.REJECTED
    assert verdict.reason == "classification=non-payment, confidence 90 → rejected"


def test_uncertain_non_payment_goes_to_review(engine):
    verdict = engine.decide(bundle(cls=classification(DocumentType.NON_PAYMENT_DOCUMENT, 60)))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert verdict.reason.startswith("classification=non-payment document, confidence 60")


def test_duplicate_blocks_approval(engine):
    image = clean_image(duplicate_detected=True, similarity_percentage=100.0)
    verdict = engine.decide(bundle(image=image, duplicate_count=1))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert verdict.reason == "duplicate match with 1 prior submission → manual review"


def test_near_duplicate_reason_names_similarity(engine):
    image = clean_image(duplicate_detected=True, similarity_percentage=93.8)
    verdict = engine.decide(bundle(image=image, duplicate_count=2))

    assert verdict.reason.startswith("duplicate match with 2 prior submissions (similarity 94%)")


def test_medium_confidence_classification_goes_to_review(engine):
    verdict = engine.decide(bundle(cls=classification(score=65)))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert "Medium-confidence classification" in verdict.reason


def test_low_ocr_confidence_goes_to_review(engine):
    verdict = engine.decide(bundle(ocr=outcome(confidence=62)))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert "OCR confidence 62 below 80 (google_vision)" in verdict.reason


def test_partial_fields_go_to_review(engine):
    text = "Google Pay\n₹3,500\n05/03/2024"
    verdict = engine.decide(bundle(ocr=outcome(text)))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert "missing transaction reference or status" in verdict.reason


def test_negative_status_blocks_approval(engine):
    text = UPI_SCREENSHOT_TEXT.replace("Payment Successful", "Payment Failed")
    verdict = engine.decide(bundle(ocr=outcome(text)))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert "status keyword 'failed'" in verdict.reason


def test_image_anomalies_go_to_review(engine):
    image = clean_image(looks_like_screenshot=False, aspect_ratio="Landscape",
                        anomalies=["landscape_orientation"])
    verdict = engine.decide(bundle(image=image))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert "unusual image heuristics (landscape_orientation, exif_missing)" in verdict.reason


def test_missing_exif_alone_does_not_block(engine):
    verdict = engine.decide(bundle(image=clean_image(exif_available=False)))
    assert verdict.status == ValidationStatus.AUTO_APPROVED


def test_both_ocr_errored_goes_to_review(engine):
    ocr = outcome(primary_error="timed out after 15s",
                  fallback=OcrResult(engine_name="tesseract", error="TesseractNotFoundError"))
    verdict = engine.decide(bundle(ocr=ocr, fields=ExtractedFields(),
                                   cls=ClassificationResult.fallback("no OCR text to classify")))

    assert verdict.status == ValidationStatus.MANUAL_REVIEW
    assert "absence of evidence" in verdict.reason


def test_clean_empty_ocr_is_rejected(engine):
    ocr = outcome(text="", confidence=0,
                  fallback=OcrResult(engine_name="tesseract", text="", confidence=0))
    verdict = engine.decide(bundle(ocr=ocr, fields=ExtractedFields(),
                                   cls=ClassificationResult.fallback("no OCR text to classify")))

    assert verdict.status == ValidationStatus.REJECTED
    assert "zero payment fields" in verdict.reason


def test_reason_lists_additional_blockers(engine):
    verdict = engine.decide(bundle(ocr=outcome(confidence=50), cls=classification(score=55)))

    assert verdict.reason.startswith("Medium-confidence classification")
    assert "; also: OCR confidence 50 below 80" in verdict.reason


def test_verdict_score_bounds(engine):
    verdict = engine.decide(bundle(ocr=outcome(confidence=100), cls=classification(score=100)))
    assert 0 <= verdict.confidence_score <= 100
