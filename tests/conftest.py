"""Shared test fixtures for the statement pipeline test suite."""

from collections.abc import Iterator
from pathlib import Path

import numpy as np
import pytest

from src.classification.category_rules import CategoryRules, load_category_rules
from src.classification.merchant_classifier import MerchantClassifier
from src.detection.profiles import ProfileTable, load_source_profiles, seed_source_patterns
from src.ocr.tesseract_engine import FallbackOCREngine
from src.pipeline import StatementPipeline
from src.store.learning_store import LearningStore
from src.utils.config import AppConfig, RulesConfig, StoreConfig

BCR_STATEMENT = (
    "BANCA COMERCIALA ROMANA\n"
    "EXTRAS DE CONT\n"
    "Titular: POPESCU ION\n"
    "05.09.2025 LIDL BUCURESTI -125.40 RON\n"
    "06.09.2025 PLATA KAUFLAND TIMISOARA -89.99 RON\n"
    "10.09.2025 TRANSFER SALARIU 4.500,00 RON\n"
)


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic grayscale test image."""
    image = np.zeros((200, 300), dtype=np.uint8)
    image[50:150, 50:250] = 255
    return image


@pytest.fixture
def sample_color_image() -> np.ndarray:
    """Create a simple synthetic RGB test image."""
    image = np.zeros((200, 300, 3), dtype=np.uint8)
    image[50:150, 50:250] = (255, 255, 255)
    return image


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def store() -> Iterator[LearningStore]:
    """In-memory learning store."""
    learning_store = LearningStore(":memory:")
    yield learning_store
    learning_store.close()


@pytest.fixture
def rules_config() -> RulesConfig:
    return RulesConfig()


@pytest.fixture
def profiles(rules_config: RulesConfig) -> ProfileTable:
    return load_source_profiles(rules_config.sources_path)


@pytest.fixture
def seeded_store(store: LearningStore, profiles: ProfileTable) -> LearningStore:
    """Store with the source patterns of every profile."""
    seed_source_patterns(store, profiles)
    return store


@pytest.fixture
def category_rules(rules_config: RulesConfig) -> CategoryRules:
    return load_category_rules(rules_config.categories_path)


@pytest.fixture
def classifier(store: LearningStore, category_rules: CategoryRules) -> MerchantClassifier:
    """Merchant classifier with the known merchants seeded."""
    merchant_classifier = MerchantClassifier(store, category_rules)
    merchant_classifier.seed_known_merchants()
    return merchant_classifier


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(store=StoreConfig(db_path=":memory:"))


@pytest.fixture
def pipeline(app_config: AppConfig, store: LearningStore) -> StatementPipeline:
    """Pipeline on an in-memory store with the fallback OCR engine."""
    return StatementPipeline(app_config, store=store, ocr_engine=FallbackOCREngine())


@pytest.fixture
def statement_text() -> str:
    """Plain-text BCR statement with two expenses and one income line."""
    return BCR_STATEMENT
