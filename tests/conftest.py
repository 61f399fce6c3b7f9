"""Test configuration and shared fixtures."""

import io
import json
import pytest
import tempfile
import shutil
import time
from pathlib import Path
from unittest.mock import Mock

import numpy as np
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from payproof.config import (
    Config, ClassificationConfig, OcrConfig, StorageConfig, OutputConfig,
)
from payproof.models import OcrResult
from payproof.ocr import OcrEngine
from payproof.store import ValidationStore


UPI_SCREENSHOT_TEXT = """PhonePe
Payment Successful
₹5,000
Paid to Green Meadows Residents Association
UTR: 412345678901
12 Mar 2024, 10:15 AM
Debited from HDFC Bank
UPI"""


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


@pytest.fixture
def sample_config(temp_dir):
    """Create a sample configuration for testing."""
    return Config(
        classification=ClassificationConfig(
            provider="openai",
            model="gpt-4o-mini",
            api_key_file=str(temp_dir / "openai_key"),
        ),
        ocr=OcrConfig(
            primary_api_key_file=str(temp_dir / "vision_key"),
            primary_timeout_seconds=0.5,
        ),
        storage=StorageConfig(database_url="sqlite://"),
        output=OutputConfig(log_file="", console_summary=False),
    )


@pytest.fixture
def store(sample_config):
    """In-memory store shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = ValidationStore(sample_config, engine=engine)
    store.create_tables()
    return store


def make_image_bytes(seed: int = 0, size=(300, 540), fmt: str = "PNG", exif=None) -> bytes:
    """Noise image with a portrait screenshot ratio; distinct seeds give distinct hashes."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    img = Image.fromarray(pixels, "RGB")
    buf = io.BytesIO()
    if exif is not None:
        img.save(buf, fmt, exif=exif)
    else:
        img.save(buf, fmt)
    return buf.getvalue()


@pytest.fixture
def screenshot_bytes():
    return make_image_bytes(seed=1)


@pytest.fixture
def other_screenshot_bytes():
    return make_image_bytes(seed=2)


class FakeOcrEngine(OcrEngine):
    """Returns a canned OcrResult, optionally after a delay."""

    def __init__(self, name: str, text: str = "", confidence: float = 0.0,
                 error: str = None, delay: float = 0.0):
        self.name = name
        self.text = text
        self.confidence = confidence
        self.error = error
        self.delay = delay
        self.calls = 0

    def recognize(self, image_data: bytes) -> OcrResult:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return OcrResult(
            engine_name=self.name,
            text=self.text,
            confidence=self.confidence,
            error=self.error,
        )


def classification_json(document_type="UPI confirmation", confidence_score=92, **extra) -> str:
    data = {
        "document_type": document_type,
        "confidence_score": confidence_score,
        "confidence_level": "High",
        "payment_method": "UPI",
        "app_or_bank_name": "PhonePe",
        "key_identifiers": {"utr": "412345678901"},
        "classification_reasoning": "UPI success screen with amount and UTR",
    }
    data.update(extra)
    return json.dumps(data)


@pytest.fixture
def mock_ai_client():
    """Create a mock AI client returning a High-confidence UPI classification."""
    mock_client = Mock()
    mock_client.model = "gpt-4o-mini"
    mock_client.complete_json.return_value = classification_json()
    return mock_client
