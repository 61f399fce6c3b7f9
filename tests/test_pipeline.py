"""End-to-end tests for the validation pipeline with fake engines and providers."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from payproof.classifier import ClassificationClient
from payproof.fetcher import ProofFetchError
from payproof.models import ValidationRequest, ValidationStatus
from payproof.ocr import OcrOrchestrator
from payproof.pipeline import ValidationPipeline
from payproof.store import ImageSignalModel

from conftest import FakeOcrEngine, UPI_SCREENSHOT_TEXT, classification_json, make_image_bytes


def build_pipeline(config, store, image_bytes, ai_client, primary, fallback):
    ocr = OcrOrchestrator(config, primary, fallback)
    classifier = ClassificationClient(config, ai_client=ai_client)
    return ValidationPipeline(
        config, store, ocr, classifier,
        fetch=lambda url, file_type, cfg: image_bytes,
    )


def request(submission_id="pay-001"):
    return ValidationRequest(
        payment_submission_id=submission_id,
        file_url=f"https://storage.example.com/proofs/{submission_id}.png",
        file_type="image/png",
    )


def test_clean_upi_screenshot_is_auto_approved(sample_config, store, screenshot_bytes, mock_ai_client):
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", UPI_SCREENSHOT_TEXT, 95),
        FakeOcrEngine("tesseract", "unused", 50),
    )

    response = pipeline.validate(request())
    pipeline.shutdown()

    assert response.validation_status == ValidationStatus.AUTO_APPROVED
    assert response.confidence_score >= 80
    assert "auto-approved" in response.reason
    assert response.extracted_data.amount == 5000.0
    assert response.extracted_data.date == "2024-03-12"
    assert response.extracted_data.transaction_ref == "412345678901"
    assert response.extracted_data.payment_type == "UPI"
    assert response.extracted_data.platform == "PhonePe"

    assert store.current_verdict("pay-001").status == ValidationStatus.AUTO_APPROVED
    # Single PENDING row transitioned in place
    assert len(store.verdict_history("pay-001")) == 1


def test_unrelated_photo_is_rejected(sample_config, store, screenshot_bytes, mock_ai_client):
    mock_ai_client.complete_json.return_value = classification_json(
        "non-payment document", 90, payment_method=None, app_or_bank_name=None
    )
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", "Sunset at the beach\nIMG_2041", 88),
        FakeOcrEngine("tesseract"),
    )

    response = pipeline.validate(request())
    pipeline.shutdown()

    assert response.validation_status == ValidationStatus.REJECTED
    assert "non-payment" in response.reason
    assert response.extracted_data.amount is None


def test_identical_image_for_second_flat_goes_to_manual_review(
        sample_config, store, screenshot_bytes, mock_ai_client):
    store.register_submission("pay-A", flat_number="A-101", collection_name="March maintenance")
    store.register_submission("pay-B", flat_number="B-202", collection_name="March maintenance")
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", UPI_SCREENSHOT_TEXT, 95),
        FakeOcrEngine("tesseract"),
    )

    first = pipeline.validate(request("pay-A"))
    second = pipeline.validate(request("pay-B"))
    pipeline.shutdown()

    # The first upload only becomes a duplicate once the second one exists
    assert first.validation_status == ValidationStatus.AUTO_APPROVED
    assert second.validation_status == ValidationStatus.MANUAL_REVIEW
    assert second.reason.startswith("duplicate match with 1 prior submission")

    with store.session() as db:
        signal = db.execute(
            select(ImageSignalModel).where(ImageSignalModel.payment_submission_id == "pay-B")
        ).scalars().one()
        assert signal.duplicate_detected is True
        assert signal.similarity_percentage == 100.0

    _, upload_count = store.hash_entry(signal.perceptual_hash)
    assert upload_count == 2


def test_primary_timeout_falls_back_and_needs_review(sample_config, store, screenshot_bytes, mock_ai_client):
    mock_ai_client.complete_json.return_value = classification_json("UPI confirmation", 65)
    primary = FakeOcrEngine("google_vision", UPI_SCREENSHOT_TEXT, 99, delay=1.5)
    fallback = FakeOcrEngine("tesseract", "Maintenance\n₹3,500\n05/03/2024\nThank you", 72)
    pipeline = build_pipeline(sample_config, store, screenshot_bytes, mock_ai_client, primary, fallback)

    response = pipeline.validate(request())
    pipeline.shutdown(wait=False)

    assert response.validation_status == ValidationStatus.MANUAL_REVIEW
    assert response.extracted_data.amount == 3500.0
    assert response.extracted_data.date == "2024-03-05"
    assert response.extracted_data.transaction_ref is None
    assert fallback.calls == 1


def test_total_upstream_failure_goes_to_manual_review(sample_config, store, screenshot_bytes, mock_ai_client):
    mock_ai_client.complete_json.side_effect = RuntimeError("provider down")
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", error="HTTP 503"),
        FakeOcrEngine("tesseract", error="tesseract is not installed"),
    )

    response = pipeline.validate(request())
    pipeline.shutdown()

    assert response.validation_status == ValidationStatus.MANUAL_REVIEW
    assert "absence of evidence" in response.reason
    assert response.extracted_data.amount is None


def test_clean_empty_ocr_is_rejected(sample_config, store, screenshot_bytes, mock_ai_client):
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", "", 0),
        FakeOcrEngine("tesseract", "   ", 0),
    )

    response = pipeline.validate(request())
    pipeline.shutdown()

    assert response.validation_status == ValidationStatus.REJECTED
    mock_ai_client.complete_json.assert_not_called()


def test_fetch_failure_leaves_verdict_pending(sample_config, store, mock_ai_client):
    def failing_fetch(url, file_type, cfg):
        raise ProofFetchError("404 Not Found")

    ocr = OcrOrchestrator(sample_config, FakeOcrEngine("google_vision"), FakeOcrEngine("tesseract"))
    pipeline = ValidationPipeline(
        sample_config, store, ocr, ClassificationClient(sample_config, ai_client=mock_ai_client),
        fetch=failing_fetch,
    )

    with pytest.raises(ProofFetchError) as exc_info:
        pipeline.validate(request())
    pipeline.shutdown()

    assert exc_info.value.retryable is True
    verdict = store.current_verdict("pay-001")
    assert verdict.status == ValidationStatus.PENDING
    assert "404 Not Found" in verdict.reason


def test_truncated_image_is_a_fetch_failure(sample_config, store, mock_ai_client, temp_dir):
    data = make_image_bytes(fmt="JPEG")
    proof = temp_dir / "pay-001.jpg"
    proof.write_bytes(data[:len(data) // 2])
    ocr = OcrOrchestrator(sample_config, FakeOcrEngine("google_vision"), FakeOcrEngine("tesseract"))
    pipeline = ValidationPipeline(
        sample_config, store, ocr, ClassificationClient(sample_config, ai_client=mock_ai_client),
    )

    with pytest.raises(ProofFetchError):
        pipeline.validate(ValidationRequest(
            payment_submission_id="pay-001", file_url=str(proof), file_type="image/jpeg",
        ))
    pipeline.shutdown()

    verdict = store.current_verdict("pay-001")
    assert verdict.status == ValidationStatus.PENDING
    assert verdict.reason.startswith("Image could not be retrieved")
    assert "not a readable image" in verdict.reason
    assert store.indexed_hashes() == []


def test_revalidation_appends_history(sample_config, store, screenshot_bytes, mock_ai_client):
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", UPI_SCREENSHOT_TEXT, 95),
        FakeOcrEngine("tesseract"),
    )

    pipeline.validate(request())
    mock_ai_client.complete_json.return_value = classification_json("UPI confirmation", 60)
    second = pipeline.validate(request())
    pipeline.shutdown()

    history = store.verdict_history("pay-001")
    assert [v.status for v in history] == [ValidationStatus.AUTO_APPROVED, ValidationStatus.MANUAL_REVIEW]
    assert second.validation_status == ValidationStatus.MANUAL_REVIEW
    # Re-validating the same submission is not a duplicate of itself
    assert "duplicate" not in second.reason


def test_submit_returns_future(sample_config, store, screenshot_bytes, mock_ai_client):
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", UPI_SCREENSHOT_TEXT, 95),
        FakeOcrEngine("tesseract"),
    )

    future = pipeline.submit(request("pay-async"))
    response = future.result(timeout=30)
    pipeline.shutdown()

    assert response.validation_status == ValidationStatus.AUTO_APPROVED
    assert store.current_verdict("pay-async").status == ValidationStatus.AUTO_APPROVED


def test_save_response(sample_config, store, screenshot_bytes, mock_ai_client, temp_dir):
    pipeline = build_pipeline(
        sample_config, store, screenshot_bytes, mock_ai_client,
        FakeOcrEngine("google_vision", UPI_SCREENSHOT_TEXT, 95),
        FakeOcrEngine("tesseract"),
    )
    response = pipeline.validate(request())
    pipeline.shutdown()

    path = pipeline.save_response("pay-001", response, str(temp_dir / "out"))

    assert path.name == "pay-001.json"
    assert '"validation_status": "AUTO_APPROVED"' in path.read_text()


def test_request_describes_proof_document():
    uploaded_at = datetime(2024, 3, 12, 10, 15, tzinfo=timezone.utc)

    document = request("pay-007").to_document(uploaded_at)

    assert document.id == "pay-007"
    assert document.image_url == "https://storage.example.com/proofs/pay-007.png"
    assert document.file_type == "image/png"
    assert document.uploaded_at == uploaded_at
    assert request().to_document().uploaded_at.tzinfo is not None
