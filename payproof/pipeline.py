"""Main validation orchestrator for payment proof submissions."""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List

from rich.console import Console
from rich.table import Table

from .classifier import ClassificationClient
from .config import Config
from .decision import DecisionEngine, SignalBundle
from .duplicates import DuplicateDetector
from .extractor import FieldExtractor, extraction_text
from .fetcher import ProofFetchError, fetch_proof
from .heuristics import HeuristicsReport, ImageHeuristicsAnalyzer
from .models import (
    DuplicateReport, ExtractedData, ImageSignal, ValidationRequest,
    ValidationResponse,
)
from .ocr import OcrOrchestrator, create_ocr_orchestrator
from .store import ValidationStore

logger = logging.getLogger(__name__)


def setup_logging(config: Config):
    """Configure logging based on config."""
    log_level = getattr(logging, config.output.log_level.upper())
    handlers = [logging.StreamHandler()]
    if config.output.log_file:
        handlers.append(logging.FileHandler(config.output.log_file))
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def build_image_signal(duplicates: DuplicateReport, heuristics: HeuristicsReport) -> ImageSignal:
    exif = heuristics.exif
    layout = heuristics.screenshot
    notes = list(layout.notes)
    if exif.notes:
        notes.append(exif.notes)
    return ImageSignal(
        perceptual_hash=duplicates.perceptual_hash,
        duplicate_detected=duplicates.duplicate_detected,
        similarity_percentage=duplicates.similarity_percentage,
        exif_available=exif.available,
        exif_editor_detected=exif.editor_detected,
        exif_source_type=exif.source_type,
        exif_creation_date=exif.creation_date,
        looks_like_screenshot=layout.looks_like_screenshot,
        aspect_ratio=layout.aspect_ratio,
        resolution_w=layout.width,
        resolution_h=layout.height,
        text_density_score=layout.text_density_score,
        anomalies=heuristics.anomalies,
        notes=notes,
    )


class ValidationPipeline:
    """Runs one proof through OCR, extraction, classification, duplicate and heuristic checks."""

    def __init__(self, config: Config, store: ValidationStore, ocr: OcrOrchestrator,
                 classifier: ClassificationClient,
                 fetch: Callable[[str, str, Config], bytes] = fetch_proof,
                 max_concurrent_validations: int = 4):
        self.config = config
        self.store = store
        self.ocr = ocr
        self.classifier = classifier
        self.fetch = fetch
        self.extractor = FieldExtractor()
        self.duplicates = DuplicateDetector(config, store)
        self.heuristics = ImageHeuristicsAnalyzer(config)
        self.decision = DecisionEngine(config)
        self.console = Console()
        self._background = ThreadPoolExecutor(
            max_workers=max_concurrent_validations, thread_name_prefix="validation"
        )

    @classmethod
    def from_config(cls, config: Config) -> "ValidationPipeline":
        setup_logging(config)
        store = ValidationStore(config)
        store.create_tables()
        return cls(config, store, create_ocr_orchestrator(config), ClassificationClient(config))

    def validate(self, request: ValidationRequest) -> ValidationResponse:
        """Validate one proof synchronously.

        Raises ProofFetchError (retryable) when the image cannot be retrieved;
        the verdict then stays PENDING with the failure as its reason.
        """
        document = request.to_document()
        submission_id = document.id
        logger.info(f"Validating proof for submission {submission_id}: {document.image_url}")
        self.store.mark_pending(submission_id)

        try:
            image_data = self.fetch(document.image_url, document.file_type, self.config)
        except ProofFetchError as e:
            logger.error(f"Storage fetch failed for {submission_id}: {e}")
            self.store.record_fetch_failure(submission_id, f"Image could not be retrieved: {e}")
            raise

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix=f"signals-{submission_id}") as pool:
            ocr_future = pool.submit(self.ocr.run, image_data)
            duplicate_future = pool.submit(self.duplicates.check, image_data, submission_id)
            heuristics_future = pool.submit(self.heuristics.analyze, image_data)

            ocr = ocr_future.result()
            text = extraction_text(
                self.config.extraction.source,
                ocr.winner_text,
                ocr.primary.text,
                ocr.fallback.text if ocr.fallback else "",
            )
            classification_future = pool.submit(self.classifier.classify, text)
            fields = self.extractor.extract(text)

            duplicates = duplicate_future.result()
            heuristics = heuristics_future.result()
            classification = classification_future.result()

        image_signal = build_image_signal(duplicates, heuristics)
        bundle = SignalBundle(
            ocr=ocr,
            fields=fields,
            classification=classification,
            image=image_signal,
            duplicate_count=len(duplicates.matches),
        )
        verdict = self.decision.decide(bundle)

        self.store.save_signals(submission_id, ocr, fields, classification, image_signal)
        verdict = self.store.record_verdict(submission_id, verdict)

        return ValidationResponse(
            validation_status=verdict.status,
            confidence_score=verdict.confidence_score,
            reason=verdict.reason,
            extracted_data=ExtractedData(
                amount=fields.amount,
                date=fields.date,
                transaction_ref=fields.transaction_ref,
                payment_type=fields.payment_type,
                platform=fields.platform,
            ),
        )

    def submit(self, request: ValidationRequest) -> Future:
        """Fire-and-forget validation; the returned Future carries the response or the fetch error."""
        future = self._background.submit(self.validate, request)

        def _log_outcome(done: Future):
            error = done.exception()
            if error is not None:
                logger.error(f"Background validation of {request.payment_submission_id} failed: {error}")

        future.add_done_callback(_log_outcome)
        return future

    def save_response(self, submission_id: str, response: ValidationResponse,
                      output_path: str = "output") -> Path:
        """Write a validation response to ``<output>/<submission_id>.json``."""
        output_dir = Path(output_path)
        output_dir.mkdir(parents=True, exist_ok=True)

        file_path = output_dir / f"{submission_id}.json"
        with open(file_path, 'w') as f:
            json.dump(
                response.model_dump(mode="json"),
                f,
                indent=self.config.output.json_indent,
            )

        logger.info(f"Result saved to {file_path}")
        return file_path

    def display_summary(self, results: List[tuple]):
        """Display ``(submission_id, response)`` pairs as a console table."""
        if not self.config.output.console_summary or not results:
            return

        table = Table(title="Payment Proof Validation")
        table.add_column("Submission", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Score", style="magenta")
        table.add_column("Amount", style="yellow")
        table.add_column("Reference", style="blue")
        table.add_column("Reason", style="white")

        status_styles = {
            "AUTO_APPROVED": "green",
            "MANUAL_REVIEW": "yellow",
            "REJECTED": "red",
        }
        for submission_id, response in results:
            status = response.validation_status.value
            data = response.extracted_data
            table.add_row(
                submission_id,
                f"[{status_styles.get(status, 'white')}]{status}[/]",
                f"{response.confidence_score:.1f}",
                f"₹{data.amount:,.2f}" if data.amount is not None else "N/A",
                data.transaction_ref or "N/A",
                response.reason,
            )

        self.console.print(table)

    def shutdown(self, wait: bool = True):
        self._background.shutdown(wait=wait)
        self.ocr.shutdown()
