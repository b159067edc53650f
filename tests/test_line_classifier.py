"""Tests for the auxiliary line classifier."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from src.extraction.line_classifier import (
    FEATURE_COUNT,
    WEIGHTS_NAME,
    LineClassifier,
    line_features,
    sigmoid,
)
from src.store.learning_store import LearningStore
from src.utils.config import LearningConfig

TRANSACTION = "05.09.2025 LIDL BUCURESTI -125.40 RON"
HEADER = "BANCA COMERCIALA ROMANA"


class TestFeatures:
    """Tests for line_features and sigmoid."""

    def test_vector_shape_and_range(self) -> None:
        features = line_features(TRANSACTION)
        assert features.shape == (FEATURE_COUNT,)
        assert np.all((features >= 0.0) & (features <= 1.0))

    def test_flags(self) -> None:
        features = line_features(TRANSACTION)
        assert features[3] == 1.0
        assert features[4] == 1.0
        assert features[9] == 1.0
        assert line_features(HEADER)[3] == 0.0

    def test_empty_line(self) -> None:
        assert not line_features("").any()

    def test_sigmoid_is_stable(self) -> None:
        values = sigmoid(np.array([-1000.0, 0.0, 1000.0]))
        assert values[1] == pytest.approx(0.5)
        assert 0.0 <= values[0] < 1e-20
        assert values[2] == pytest.approx(1.0)


class TestLineClassifier:
    """Tests for prediction, online training and persistence."""

    def test_seeded_init_is_deterministic(self) -> None:
        assert LineClassifier().predict(TRANSACTION) == LineClassifier().predict(TRANSACTION)

    def test_warm_start_separates_rows_from_headers(self) -> None:
        classifier = LineClassifier()
        assert classifier.predict(TRANSACTION) > classifier.predict(HEADER)
        assert 0.0 <= classifier.predict("") <= 1.0

    def test_train_step_reduces_error(self) -> None:
        classifier = LineClassifier(config=LearningConfig(warm_start_epochs=0))
        first = classifier.train_step("Cod client 998877", 0.0)
        for _ in range(30):
            last = classifier.train_step("Cod client 998877", 0.0)
        assert last < first

    def test_weights_versioned_in_store(self, store: LearningStore) -> None:
        classifier = LineClassifier(store)
        assert classifier.version == 0
        classifier.train_step(TRANSACTION, 1.0)
        classifier.train_step(HEADER, 0.0)
        assert classifier.version == 2
        assert store.load_weights(WEIGHTS_NAME).version == 2

    def test_stored_weights_are_loaded(self, store: LearningStore) -> None:
        trained = LineClassifier(store)
        trained.train_step(HEADER, 0.0)

        reloaded = LineClassifier(store, LearningConfig(seed=99))
        assert reloaded.version == 1
        assert reloaded.predict(HEADER) == pytest.approx(trained.predict(HEADER))

    def test_shape_mismatch_retrains(self, store: LearningStore) -> None:
        LineClassifier(store).train_step(HEADER, 0.0)
        smaller = LineClassifier(store, LearningConfig(hidden_size=8))
        assert smaller.version == 0
        assert smaller.hidden.weights.shape == (FEATURE_COUNT, 8)

    def test_in_memory_classifier_keeps_version(self) -> None:
        classifier = LineClassifier()
        classifier.train_step(TRANSACTION, 1.0)
        assert classifier.version == 0

    def test_concurrent_training_saves_every_step(self, store: LearningStore) -> None:
        classifier = LineClassifier(store)
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda i: classifier.train_step(TRANSACTION, float(i % 2)), range(12)))
        assert store.load_weights(WEIGHTS_NAME).version == 12
