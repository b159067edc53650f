"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from src.utils.config import (
    AppConfig,
    ClassificationConfig,
    DetectionConfig,
    ExtractionConfig,
    LearningConfig,
    OCRConfig,
    RulesConfig,
    StoreConfig,
    load_config,
    load_rule_table,
)


class TestOCRConfig:
    """Tests for OCRConfig defaults and overrides."""

    def test_defaults(self) -> None:
        cfg = OCRConfig()
        assert cfg.languages == "ron+eng"
        assert cfg.psm == 6
        assert cfg.pdf_dpi == 300
        assert cfg.tesseract_cmd is None
        assert cfg.min_native_chars == 50
        assert cfg.fallback_confidence == 0.1

    def test_preprocessing_flags_override(self) -> None:
        cfg = OCRConfig(deskew_enabled=False, clahe_clip_limit=3.5)
        assert cfg.deskew_enabled is False
        assert cfg.binarize_enabled is True
        assert cfg.clahe_clip_limit == 3.5


class TestThresholdConfigs:
    """Tests for the cascade threshold defaults."""

    def test_detection_thresholds(self) -> None:
        cfg = DetectionConfig()
        assert cfg.signature_threshold == 0.8
        assert cfg.pattern_threshold == 0.6
        assert cfg.heuristic_threshold == 0.5
        assert cfg.head_ratio == 0.1

    def test_classification_floors(self) -> None:
        cfg = ClassificationConfig()
        assert (cfg.exact_floor, cfg.alias_floor, cfg.fuzzy_floor) == (0.8, 0.8, 0.7)
        assert cfg.category_floor == 0.6
        assert cfg.review_threshold == 0.4
        assert cfg.uncategorized_label == "Uncategorized"

    def test_extraction_defaults(self) -> None:
        cfg = ExtractionConfig()
        assert cfg.two_digit_year_prefix == "20"
        assert cfg.description_max_length == 100
        assert cfg.prefilter_threshold == 0.6
        assert cfg.min_prefilter_lines == 3

    def test_learning_defaults(self) -> None:
        cfg = LearningConfig()
        assert cfg.hidden_size == 15
        assert cfg.learning_rate == 0.1

    def test_invalid_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StoreConfig(max_retries="many")


class TestAppConfig:
    """Tests for the top-level AppConfig."""

    def test_defaults(self) -> None:
        cfg = AppConfig()
        assert isinstance(cfg.ocr, OCRConfig)
        assert isinstance(cfg.detection, DetectionConfig)
        assert isinstance(cfg.store, StoreConfig)
        assert cfg.log_level == "INFO"

    def test_rule_paths_exist(self) -> None:
        rules = RulesConfig()
        assert Path(rules.sources_path).exists()
        assert Path(rules.categories_path).exists()
        assert Path(rules.corrections_path).exists()

    def test_nested_override(self) -> None:
        cfg = AppConfig(
            extraction=ExtractionConfig(two_digit_year_prefix="19"),
            log_level="DEBUG",
        )
        assert cfg.extraction.two_digit_year_prefix == "19"
        assert cfg.log_level == "DEBUG"


class TestLoadConfig:
    """Tests for the load_config function."""

    def test_load_default_config(self, config_dir: Path) -> None:
        cfg = load_config(config_dir / "config.yaml")
        assert isinstance(cfg, AppConfig)
        assert cfg.ocr.languages == "ron+eng"
        assert cfg.extraction.two_digit_year_prefix == "20"
        assert cfg.server.port == 8000

    def test_load_missing_file_returns_defaults(self) -> None:
        cfg = load_config(Path("/nonexistent/path/config.yaml"))
        assert isinstance(cfg, AppConfig)
        assert cfg.classification.category_floor == 0.6

    def test_load_custom_yaml(self, tmp_path: Path) -> None:
        config_data = {
            "detection": {"signature_threshold": 0.85},
            "store": {"db_path": str(tmp_path / "db.sqlite"), "max_retries": 3},
            "log_level": "DEBUG",
        }
        config_file = tmp_path / "config.yaml"
        with open(config_file, "w") as f:
            yaml.dump(config_data, f)

        cfg = load_config(config_file)
        assert cfg.detection.signature_threshold == 0.85
        assert cfg.detection.pattern_threshold == 0.6
        assert cfg.store.max_retries == 3
        assert cfg.log_level == "DEBUG"

    def test_load_empty_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        cfg = load_config(config_file)
        assert isinstance(cfg, AppConfig)


class TestLoadRuleTable:
    """Tests for the load_rule_table function."""

    def test_missing_table_is_empty(self, tmp_path: Path) -> None:
        assert load_rule_table(tmp_path / "nope.yaml") == {}

    def test_reads_yaml(self, tmp_path: Path) -> None:
        table = tmp_path / "rules.yaml"
        table.write_text("groups:\n  - name: a\n", encoding="utf-8")
        assert load_rule_table(table) == {"groups": [{"name": "a"}]}
