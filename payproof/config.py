"""Configuration management for the payment proof validator."""

import toml
from pathlib import Path
from typing import List
from dataclasses import dataclass, field, fields


@dataclass
class ClassificationConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key_file: str = ".secrets/openai_key"
    timeout_seconds: float = 30.0
    temperature: float = 0.0
    max_retries: int = 0


@dataclass
class OcrConfig:
    primary_engine: str = "google_vision"
    primary_api_key_file: str = ".secrets/google_vision_key"
    primary_timeout_seconds: float = 15.0
    fallback_language: str = "eng"
    always_run_fallback: bool = False
    fetch_timeout_seconds: float = 20.0
    max_file_size_mb: int = 10


@dataclass
class ExtractionConfig:
    source: str = "winner"


@dataclass
class DuplicatesConfig:
    hash_size: int = 8
    near_match_max_distance: int = 0


@dataclass
class HeuristicsConfig:
    min_width: int = 200
    min_height: int = 300
    max_width: int = 2000
    max_height: int = 4000
    min_text_density: int = 5
    editor_signatures: List[str] = field(default_factory=lambda: [
        "photoshop", "gimp", "paint", "pixlr", "canva", "snapseed",
        "lightroom", "editor",
    ])


@dataclass
class DecisionConfig:
    ocr_weight: float = 0.3
    fields_weight: float = 0.3
    classification_weight: float = 0.4
    high_ocr_confidence: float = 80.0
    reject_confidence: float = 80.0


@dataclass
class StorageConfig:
    database_url: str = "sqlite:///./data/payproof.db"
    echo: bool = False


@dataclass
class OutputConfig:
    log_level: str = "INFO"
    log_file: str = "payproof.log"
    json_indent: int = 2
    console_summary: bool = True


def _section(section_cls, data: dict, name: str):
    values = data.get(name, {})
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys in [{name}]: {', '.join(sorted(unknown))}")
    return section_cls(**values)


@dataclass
class Config:
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    ocr: OcrConfig = field(default_factory=OcrConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    duplicates: DuplicatesConfig = field(default_factory=DuplicatesConfig)
    heuristics: HeuristicsConfig = field(default_factory=HeuristicsConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def load(cls, config_path: str = "config.toml") -> "Config":
        """Load configuration from TOML file.

        Sections missing from the file keep their defaults.
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        data = toml.load(config_file)

        return cls(
            classification=_section(ClassificationConfig, data, "classification"),
            ocr=_section(OcrConfig, data, "ocr"),
            extraction=_section(ExtractionConfig, data, "extraction"),
            duplicates=_section(DuplicatesConfig, data, "duplicates"),
            heuristics=_section(HeuristicsConfig, data, "heuristics"),
            decision=_section(DecisionConfig, data, "decision"),
            storage=_section(StorageConfig, data, "storage"),
            output=_section(OutputConfig, data, "output"),
        )

    def get_api_key(self) -> str:
        """Load the classification provider API key from its key file."""
        return _read_key(self.classification.api_key_file)

    def get_ocr_api_key(self) -> str:
        """Load the primary OCR engine API key from its key file."""
        return _read_key(self.ocr.primary_api_key_file)


def _read_key(key_file: str) -> str:
    key_path = Path(key_file)
    if not key_path.exists():
        raise FileNotFoundError(f"API key file not found: {key_file}")

    return key_path.read_text().strip()
