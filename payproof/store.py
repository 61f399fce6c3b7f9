"""Relational persistence for verdicts, signals and the perceptual-hash index."""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, JSON, String, Text,
    UniqueConstraint, create_engine, select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import Config
from .models import (
    ClassificationResult, ExtractedFields, ImageSignal, OcrOutcome,
    ValidationStatus, ValidationVerdict,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentSubmissionModel(Base):
    """Read-side view of a submission owned by the payments application."""
    __tablename__ = "payment_submissions"

    id = Column(String, primary_key=True)
    flat_number = Column(String)
    collection_name = Column(String)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ValidationVerdictModel(Base):
    """Append-only verdict audit trail; the latest row is the current verdict."""
    __tablename__ = "validation_verdicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_submission_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    confidence_score = Column(Float, nullable=False, default=0.0)
    reason = Column(Text, nullable=False, default="")
    validated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_verdict(self) -> ValidationVerdict:
        return ValidationVerdict(
            status=ValidationStatus(self.status),
            confidence_score=self.confidence_score,
            reason=self.reason,
            validated_at=self.validated_at,
        )


class ExtractedFieldsModel(Base):
    __tablename__ = "extracted_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_submission_id = Column(String, nullable=False, index=True)
    ocr_winner = Column(String, nullable=False)
    ocr_text = Column(Text, nullable=False, default="")
    ocr_results_json = Column(JSON, nullable=False)
    fields_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class DocumentClassificationModel(Base):
    __tablename__ = "document_classifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_submission_id = Column(String, nullable=False, index=True)
    document_type = Column(String, nullable=False)
    confidence_score = Column(Float, nullable=False)
    confidence_level = Column(String, nullable=False)
    reasoning = Column(Text)
    failed = Column(Boolean, nullable=False, default=False)
    result_json = Column(JSON, nullable=False)
    classified_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ImageSignalModel(Base):
    __tablename__ = "image_signals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_submission_id = Column(String, nullable=False, index=True)
    perceptual_hash = Column(String, nullable=False, index=True)
    duplicate_detected = Column(Boolean, nullable=False, default=False)
    similarity_percentage = Column(Float)
    signal_json = Column(JSON, nullable=False)
    analyzed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class PerceptualHashIndexModel(Base):
    __tablename__ = "perceptual_hash_index"

    perceptual_hash = Column(String, primary_key=True)
    hash_algorithm = Column(String, nullable=False, default="dhash")
    first_payment_id = Column(String, nullable=False)
    upload_count = Column(Integer, nullable=False, default=1)
    first_uploaded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class HashSightingModel(Base):
    """One row per (hash, submission); backs the full duplicate history."""
    __tablename__ = "hash_sightings"
    __table_args__ = (
        UniqueConstraint("perceptual_hash", "payment_submission_id", name="uq_hash_submission"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    perceptual_hash = Column(String, nullable=False, index=True)
    payment_submission_id = Column(String, nullable=False, index=True)
    sighted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class StoreError(Exception):
    """Raised when a write would break a persisted invariant."""


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    # SQLite needs check_same_thread=False for worker threads
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args, echo=echo)


class ValidationStore:
    """Reads and writes the records owned by the validation pipeline."""

    def __init__(self, config: Config, engine: Optional[Engine] = None):
        self.config = config
        self.engine = engine or create_store_engine(
            config.storage.database_url, config.storage.echo
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def register_submission(self, submission_id: str, flat_number: Optional[str] = None,
                            collection_name: Optional[str] = None, status: str = "pending"):
        """Mirror a submission's owning flat/collection so duplicate reports can name it."""
        with self.session() as db:
            row = db.get(PaymentSubmissionModel, submission_id)
            if row is None:
                db.add(PaymentSubmissionModel(
                    id=submission_id, flat_number=flat_number,
                    collection_name=collection_name, status=status,
                ))
            else:
                row.flat_number = flat_number or row.flat_number
                row.collection_name = collection_name or row.collection_name
                row.status = status or row.status

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def _latest_verdict_row(self, db: Session, submission_id: str) -> Optional[ValidationVerdictModel]:
        stmt = (
            select(ValidationVerdictModel)
            .where(ValidationVerdictModel.payment_submission_id == submission_id)
            .order_by(ValidationVerdictModel.id.desc())
            .limit(1)
        )
        return db.execute(stmt).scalars().first()

    def mark_pending(self, submission_id: str) -> ValidationVerdict:
        """Create the initial PENDING verdict; an existing verdict is left as is."""
        with self.session() as db:
            row = self._latest_verdict_row(db, submission_id)
            if row is None:
                row = ValidationVerdictModel(
                    payment_submission_id=submission_id,
                    status=ValidationStatus.PENDING.value,
                    confidence_score=0.0,
                    reason="Awaiting validation",
                    validated_at=utcnow(),
                )
                db.add(row)
                db.flush()
            return row.to_verdict()

    def record_fetch_failure(self, submission_id: str, reason: str) -> ValidationVerdict:
        """Record a storage-fetch failure on a still-PENDING verdict."""
        with self.session() as db:
            row = self._latest_verdict_row(db, submission_id)
            if row is None:
                row = ValidationVerdictModel(
                    payment_submission_id=submission_id,
                    status=ValidationStatus.PENDING.value,
                    confidence_score=0.0,
                    reason=reason,
                    validated_at=utcnow(),
                )
                db.add(row)
            elif row.status == ValidationStatus.PENDING.value:
                row.reason = reason
                row.validated_at = utcnow()
            else:
                logger.warning(
                    f"Fetch failure for {submission_id} left current verdict {row.status} untouched: {reason}"
                )
            db.flush()
            return row.to_verdict()

    def record_verdict(self, submission_id: str, verdict: ValidationVerdict) -> ValidationVerdict:
        """Store a terminal verdict.

        A PENDING row transitions in place; a re-validation appends a new row
        so the history is kept.
        """
        if not verdict.status.is_terminal:
            raise StoreError("Only terminal verdicts can be recorded")

        with self.session() as db:
            row = self._latest_verdict_row(db, submission_id)
            if row is None or row.status != ValidationStatus.PENDING.value:
                row = ValidationVerdictModel(payment_submission_id=submission_id)
                db.add(row)
            row.status = verdict.status.value
            row.confidence_score = verdict.confidence_score
            row.reason = verdict.reason
            row.validated_at = verdict.validated_at
            db.flush()
            return row.to_verdict()

    def current_verdict(self, submission_id: str) -> Optional[ValidationVerdict]:
        with self.session() as db:
            row = self._latest_verdict_row(db, submission_id)
            return row.to_verdict() if row else None

    def verdict_history(self, submission_id: str) -> List[ValidationVerdict]:
        with self.session() as db:
            stmt = (
                select(ValidationVerdictModel)
                .where(ValidationVerdictModel.payment_submission_id == submission_id)
                .order_by(ValidationVerdictModel.id)
            )
            return [row.to_verdict() for row in db.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def save_signals(self, submission_id: str, ocr: OcrOutcome, fields: ExtractedFields,
                     classification: ClassificationResult, image_signal: ImageSignal):
        with self.session() as db:
            db.add(ExtractedFieldsModel(
                payment_submission_id=submission_id,
                ocr_winner=ocr.winner,
                ocr_text=ocr.winner_text,
                ocr_results_json={
                    "primary": ocr.primary.model_dump(),
                    "fallback": ocr.fallback.model_dump() if ocr.fallback else None,
                },
                fields_json=fields.model_dump(),
            ))
            db.add(DocumentClassificationModel(
                payment_submission_id=submission_id,
                document_type=classification.document_type.value,
                confidence_score=classification.confidence_score,
                confidence_level=classification.confidence_level.value,
                reasoning=classification.reasoning,
                failed=classification.failed,
                result_json=classification.model_dump(mode="json"),
            ))
            db.add(ImageSignalModel(
                payment_submission_id=submission_id,
                perceptual_hash=image_signal.perceptual_hash,
                duplicate_detected=image_signal.duplicate_detected,
                similarity_percentage=image_signal.similarity_percentage,
                signal_json=image_signal.model_dump(mode="json"),
            ))

    # ------------------------------------------------------------------
    # Perceptual hash index
    # ------------------------------------------------------------------

    def _insert(self, model):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise StoreError(f"Atomic upsert not supported for dialect: {dialect}")

    def record_sighting(self, perceptual_hash: str, submission_id: str,
                        algorithm: str = "dhash") -> int:
        """Record that ``submission_id`` hashed to ``perceptual_hash``.

        The index counter is bumped by an INSERT ... ON CONFLICT DO UPDATE only
        when this submission has not been seen with the hash before, in the
        same transaction as the sighting. Returns the hash's upload_count.
        """
        now = utcnow()
        index_table = PerceptualHashIndexModel.__table__
        with self.session() as db:
            sighting = (
                self._insert(HashSightingModel)
                .values(perceptual_hash=perceptual_hash,
                        payment_submission_id=submission_id, sighted_at=now)
                .on_conflict_do_nothing(index_elements=["perceptual_hash", "payment_submission_id"])
            )
            if db.execute(sighting).rowcount == 1:
                upsert = (
                    self._insert(PerceptualHashIndexModel)
                    .values(perceptual_hash=perceptual_hash, hash_algorithm=algorithm,
                            first_payment_id=submission_id, upload_count=1,
                            first_uploaded_at=now, last_updated_at=now)
                    .on_conflict_do_update(
                        index_elements=["perceptual_hash"],
                        set_={"upload_count": index_table.c.upload_count + 1,
                              "last_updated_at": now},
                    )
                )
                db.execute(upsert)

            count = db.execute(
                select(PerceptualHashIndexModel.upload_count)
                .where(PerceptualHashIndexModel.perceptual_hash == perceptual_hash)
            ).scalar_one()
        return count

    def hash_entry(self, perceptual_hash: str) -> Optional[Tuple[str, int]]:
        """Return ``(first_payment_id, upload_count)`` for a hash, if indexed."""
        with self.session() as db:
            row = db.get(PerceptualHashIndexModel, perceptual_hash)
            return (row.first_payment_id, row.upload_count) if row else None

    def sightings(self, perceptual_hash: str, exclude_submission_id: Optional[str] = None) -> List[dict]:
        """Every submission that produced the hash, oldest first, with its owner details."""
        with self.session() as db:
            stmt = (
                select(HashSightingModel, PaymentSubmissionModel)
                .outerjoin(PaymentSubmissionModel,
                           PaymentSubmissionModel.id == HashSightingModel.payment_submission_id)
                .where(HashSightingModel.perceptual_hash == perceptual_hash)
                .order_by(HashSightingModel.id)
            )
            if exclude_submission_id is not None:
                stmt = stmt.where(HashSightingModel.payment_submission_id != exclude_submission_id)

            results = []
            for sighting, submission in db.execute(stmt):
                results.append({
                    "payment_submission_id": sighting.payment_submission_id,
                    "perceptual_hash": sighting.perceptual_hash,
                    "flat_number": submission.flat_number if submission else None,
                    "collection_name": submission.collection_name if submission else None,
                    "status": submission.status if submission else None,
                })
            return results

    def indexed_hashes(self) -> List[str]:
        with self.session() as db:
            return list(db.execute(select(PerceptualHashIndexModel.perceptual_hash)).scalars())
