"""Configuration management for the statement intelligence pipeline.

Loads and validates YAML configuration with sensible defaults for
document normalization, source detection, line extraction, merchant
classification, and the learning store.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_RULES_DIR = Path(__file__).resolve().parent.parent / "rules"


class OCRConfig(BaseModel):
    """Configuration for text extraction and the Tesseract OCR engine."""

    tesseract_cmd: str | None = None
    languages: str = "ron+eng"
    psm: int = 6
    pdf_dpi: int = 300
    timeout_seconds: float = 120.0
    min_native_chars: int = 50
    min_cache_confidence: float = 0.5
    fallback_confidence: float = 0.1
    preprocess_enabled: bool = True
    deskew_enabled: bool = True
    denoise_enabled: bool = True
    contrast_enabled: bool = True
    binarize_enabled: bool = True
    clahe_clip_limit: float = 2.0


class DetectionConfig(BaseModel):
    """Confidence thresholds for the source detection cascade."""

    signature_threshold: float = 0.8
    pattern_threshold: float = 0.6
    heuristic_threshold: float = 0.5
    head_ratio: float = 0.1
    accuracy_weight: float = 0.4
    fuzzy_token_threshold: float = 0.7
    fuzzy_max_confidence: float = 0.6


class ExtractionConfig(BaseModel):
    """Configuration for transaction line extraction."""

    two_digit_year_prefix: str = "20"
    description_max_length: int = 100
    prefilter_threshold: float = 0.6
    min_prefilter_lines: int = 3
    min_line_length: int = 6


class ClassificationConfig(BaseModel):
    """Confidence floors for the merchant classification cascade."""

    exact_floor: float = 0.8
    alias_floor: float = 0.8
    fuzzy_floor: float = 0.7
    category_floor: float = 0.6
    review_threshold: float = 0.4
    uncategorized_label: str = "Uncategorized"


class StoreConfig(BaseModel):
    """Configuration for the learning store."""

    db_path: str = "data/learning.db"
    max_retries: int = 5
    feedback_keep: int = 1000
    merchant_min_occurrences: int = 2
    merchant_unseen_days: int = 180
    performance_days: int = 90
    ocr_cache_days: int = 90


class LearningConfig(BaseModel):
    """Configuration for the auxiliary line classifier and feedback learning."""

    hidden_size: int = 15
    learning_rate: float = 0.1
    seed: int = 7
    warm_start_epochs: int = 200
    corrected_category_floor: float = 0.6


class RulesConfig(BaseModel):
    """Locations of the data-driven rule tables."""

    sources_path: str = str(_RULES_DIR / "sources.yaml")
    categories_path: str = str(_RULES_DIR / "categories.yaml")
    corrections_path: str = str(_RULES_DIR / "corrections.yaml")


class ServerConfig(BaseModel):
    """Bind address of the API server."""

    host: str = "0.0.0.0"
    port: int = 8000


class AppConfig(BaseModel):
    """Top-level application configuration."""

    ocr: OCRConfig = Field(default_factory=OCRConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    pipeline_timeout_seconds: float = 600.0
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()


def load_rule_table(path: str | Path) -> dict:
    """Load a YAML rule table.

    Args:
        path: Path to the rule table file.

    Returns:
        Parsed table, or an empty dict when the file is missing or empty.
    """
    path = Path(path)
    if not path.exists():
        logger.warning("Rule table %s not found", path)
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    logger.debug("Loaded rule table %s", path)
    return data or {}
