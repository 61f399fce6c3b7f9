"""Data models for the payment proof validator."""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, List, Optional, Dict, Any, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator


def clamp_score(value: float) -> float:
    """Clamp a confidence score into [0, 100]."""
    return max(0.0, min(100.0, float(value)))


class DocumentType(str, Enum):
    UPI_CONFIRMATION = "UPI confirmation"
    BANK_TRANSFER_CONFIRMATION = "bank transfer confirmation"
    CHEQUE_IMAGE = "cheque image"
    CASH_RECEIPT = "cash receipt"
    NON_PAYMENT_DOCUMENT = "non-payment document"
    UNCLEAR = "unclear"

    @property
    def is_payment(self) -> bool:
        return self in PAYMENT_DOCUMENT_TYPES


PAYMENT_DOCUMENT_TYPES = frozenset({
    DocumentType.UPI_CONFIRMATION,
    DocumentType.BANK_TRANSFER_CONFIRMATION,
    DocumentType.CHEQUE_IMAGE,
    DocumentType.CASH_RECEIPT,
})


class ConfidenceLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        if score >= 80:
            return cls.HIGH
        if score >= 50:
            return cls.MEDIUM
        return cls.LOW


class ValidationStatus(str, Enum):
    PENDING = "PENDING"
    AUTO_APPROVED = "AUTO_APPROVED"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not ValidationStatus.PENDING


class ProofDocument(BaseModel):
    model_config = {"frozen": True}

    id: str
    image_url: str
    file_type: str
    uploaded_at: datetime


class OcrResult(BaseModel):
    model_config = {"frozen": True}

    engine_name: str
    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    processing_time_ms: int = 0
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.error is None and bool(self.text.strip())


class OcrOutcome(BaseModel):
    primary: OcrResult
    fallback: Optional[OcrResult] = None
    winner: str
    winner_text: str = ""
    winner_confidence: float = Field(default=0.0, ge=0.0, le=100.0)

    @property
    def both_failed(self) -> bool:
        return self.winner == "both_failed"

    @property
    def upstream_error(self) -> bool:
        """True when any engine that ran reported an error rather than empty text."""
        results = [self.primary] + ([self.fallback] if self.fallback else [])
        return any(r.error for r in results)


class ExtractedFields(BaseModel):
    amount: Optional[float] = None
    date: Optional[str] = None
    transaction_ref: Optional[str] = None
    platform: Optional[str] = None
    bank_name: Optional[str] = None
    payment_type: Optional[str] = None
    status_keyword: Optional[str] = None
    has_amount: bool = False
    has_transaction_ref: bool = False
    has_date: bool = False
    has_status_keyword: bool = False
    has_payment_keyword: bool = False
    has_bank_name: bool = False

    PRESENCE_FLAGS: ClassVar[Tuple[str, ...]] = (
        "has_amount", "has_transaction_ref", "has_date",
        "has_status_keyword", "has_payment_keyword", "has_bank_name",
    )

    @property
    def found_count(self) -> int:
        return sum(1 for flag in self.PRESENCE_FLAGS if getattr(self, flag))

    @property
    def completeness(self) -> float:
        return self.found_count / len(self.PRESENCE_FLAGS)


class ClassificationResult(BaseModel):
    document_type: DocumentType
    confidence_score: float = Field(ge=0.0, le=100.0)
    confidence_level: ConfidenceLevel
    reasoning: str = ""
    payment_method: Optional[str] = None
    app_or_bank_name: Optional[str] = None
    key_identifiers: Dict[str, Any] = Field(default_factory=dict)
    model_used: Optional[str] = None
    processing_time_ms: int = 0
    failed: bool = False

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp(cls, value):
        return clamp_score(value or 0)

    @classmethod
    def fallback(cls, cause: str) -> "ClassificationResult":
        return cls(
            document_type=DocumentType.UNCLEAR,
            confidence_score=0,
            confidence_level=ConfidenceLevel.LOW,
            reasoning=f"Classification unavailable: {cause}",
            failed=True,
        )


class DuplicateMatch(BaseModel):
    payment_submission_id: str
    perceptual_hash: str
    similarity_percentage: float = Field(ge=0.0, le=100.0)
    flat_number: Optional[str] = None
    collection_name: Optional[str] = None
    status: Optional[str] = None


class DuplicateReport(BaseModel):
    perceptual_hash: str
    duplicate_detected: bool = False
    similarity_percentage: Optional[float] = None
    upload_count: int = 1
    matches: List[DuplicateMatch] = Field(default_factory=list)

    @model_validator(mode="after")
    def _similarity_when_duplicate(self):
        if self.duplicate_detected and self.similarity_percentage is None:
            raise ValueError("similarity_percentage is required when a duplicate is detected")
        return self


class ImageSignal(BaseModel):
    perceptual_hash: str
    duplicate_detected: bool = False
    similarity_percentage: Optional[float] = None
    exif_available: bool = False
    exif_editor_detected: Optional[str] = None
    exif_source_type: str = "unknown"
    exif_creation_date: Optional[str] = None
    looks_like_screenshot: bool = False
    aspect_ratio: str = "Unknown"
    resolution_w: int = 0
    resolution_h: int = 0
    text_density_score: int = Field(default=0, ge=0, le=100)
    anomalies: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _similarity_when_duplicate(self):
        if self.duplicate_detected and self.similarity_percentage is None:
            raise ValueError("similarity_percentage is required when a duplicate is detected")
        return self


class ValidationVerdict(BaseModel):
    status: ValidationStatus
    confidence_score: float = Field(default=0.0, ge=0.0, le=100.0)
    reason: str = ""
    validated_at: datetime

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp(cls, value):
        return clamp_score(value or 0)


class ValidationRequest(BaseModel):
    payment_submission_id: str = Field(min_length=1)
    file_url: str = Field(min_length=1)
    file_type: str = Field(min_length=1)

    def to_document(self, uploaded_at: Optional[datetime] = None) -> ProofDocument:
        """The immutable proof record this request validates."""
        return ProofDocument(
            id=self.payment_submission_id,
            image_url=self.file_url,
            file_type=self.file_type,
            uploaded_at=uploaded_at or datetime.now(timezone.utc),
        )


class ExtractedData(BaseModel):
    amount: Optional[float] = None
    date: Optional[str] = None
    transaction_ref: Optional[str] = None
    payment_type: Optional[str] = None
    platform: Optional[str] = None


class ValidationResponse(BaseModel):
    validation_status: ValidationStatus
    confidence_score: float = Field(ge=0.0, le=100.0)
    reason: str
    extracted_data: ExtractedData
