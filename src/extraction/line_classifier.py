"""Auxiliary line classifier.

A tiny feed-forward network (10 features, one sigmoid hidden layer, one
sigmoid output) that scores whether a text line is a transaction row. It
pre-filters lines for the line extractor and learns online from user
feedback, one gradient step per correction.
"""

import re
import threading
from dataclasses import dataclass

import numpy as np

from src.store.learning_store import LearningStore
from src.store.models import ClassifierWeights
from src.utils.config import LearningConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

FEATURE_COUNT = 10
WEIGHTS_NAME = "line_classifier"

_DATE = re.compile(r"\d{1,2}[./-]\d{1,2}[./-]\d{2,4}|\d{4}-\d{2}-\d{2}")
_AMOUNT = re.compile(r"\d+[.,]\d{2}\b")
_KEYWORDS = re.compile(r"plata|plată|cumparare|transfer|retragere|incasare|\bpos\b|\bcard\b", re.I)
_SOURCE_CODES = re.compile(r"\b(?:bcr|bt|ing|raiffeisen|unicredit)\b", re.I)
_PUNCTUATION = re.compile(r"[.,;:!?]")
_CURRENCY = re.compile(r"\b(?:ron|lei|eur|usd)\b", re.I)

# Labelled lines the model is warm-started on before any feedback exists.
WARM_START_SAMPLES: list[tuple[str, float]] = [
    ("05.09.2025 LIDL BUCURESTI -125.40 RON", 1.0),
    ("15/09/2025 PLATA CARD KAUFLAND -45.67", 1.0),
    ("12-08-2025 POS OMV PETROM 250,00 RON", 1.0),
    ("03.07.2025 Plată Enel Energie -180,35", 1.0),
    ("21/06/2025 RETRAGERE ATM BCR -500.00", 1.0),
    ("2025-05-14 TRANSFER SALARIU 5.430,00 RON", 1.0),
    ("28.09.2025 CUMPARARE EMAG.RO -1.299,99 LEI", 1.0),
    ("09-09-2025 CARD UBER TRIP 23,50 RON", 1.0),
    ("01.10.2025 INCASARE TRANSFER +2.000,00", 1.0),
    ("17.03.25 NETFLIX.COM -49,99 RON", 1.0),
    ("BANCA COMERCIALA ROMANA", 0.0),
    ("EXTRAS DE CONT", 0.0),
    ("Titular: POPESCU ION", 0.0),
    ("IBAN: RO49AAAA1B31007593840000", 0.0),
    ("Pagina 1 din 3", 0.0),
    ("Data Descriere Suma Sold", 0.0),
    ("Perioada: 01.09.2025 - 30.09.2025", 0.0),
    ("Va multumim ca ati ales serviciile noastre", 0.0),
    ("Sucursala Bucuresti Centru", 0.0),
    ("Cod client 123456", 0.0),
]


def sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -60, 60)))


def line_features(line: str) -> np.ndarray:
    """Fixed-size feature vector of a line, every entry in [0, 1]."""
    if not line:
        return np.zeros(FEATURE_COUNT)
    length = len(line)
    return np.array(
        [
            sum(c.isdigit() for c in line) / length,
            sum(c.isupper() for c in line) / length,
            sum(c.isspace() for c in line) / length,
            1.0 if _DATE.search(line) else 0.0,
            1.0 if _AMOUNT.search(line) else 0.0,
            1.0 if _KEYWORDS.search(line) else 0.0,
            min(length / 100, 1.0),
            1.0 if _SOURCE_CODES.search(line) else 0.0,
            len(_PUNCTUATION.findall(line)) / length,
            1.0 if _CURRENCY.search(line) else 0.0,
        ]
    )


@dataclass
class DenseLayer:
    """Fully connected sigmoid layer."""

    weights: np.ndarray
    bias: np.ndarray

    def forward(self, x: np.ndarray) -> np.ndarray:
        return sigmoid(x @ self.weights + self.bias)


class LineClassifier:
    """Scores lines as transaction rows.

    Initial weights are drawn from a seeded generator and warm-started on
    built-in samples; weights persisted in the store replace them.

    Args:
        store: Learning store for weight persistence; None keeps the
            model in memory only.
        config: Network size, learning rate and seed.
    """

    def __init__(self, store: LearningStore | None = None, config: LearningConfig | None = None):
        self.store = store
        self.config = config or LearningConfig()
        self._lock = threading.Lock()
        self.version = 0

        rng = np.random.default_rng(self.config.seed)
        size = self.config.hidden_size
        self.hidden = DenseLayer(rng.normal(0.0, 0.5, (FEATURE_COUNT, size)), np.zeros(size))
        self.output = DenseLayer(rng.normal(0.0, 0.5, (size, 1)), np.zeros(1))

        if not self._load():
            self.warm_start(self.config.warm_start_epochs)

    def _load(self) -> bool:
        if self.store is None:
            return False
        saved = self.store.load_weights(WEIGHTS_NAME)
        if saved is None:
            return False
        if saved.w_hidden.shape != self.hidden.weights.shape:
            logger.warning(
                "Stored line classifier has shape %s, expected %s; retraining",
                saved.w_hidden.shape,
                self.hidden.weights.shape,
            )
            return False
        self.hidden = DenseLayer(saved.w_hidden, saved.b_hidden)
        self.output = DenseLayer(saved.w_out.reshape(-1, 1), saved.b_out.reshape(1))
        self.version = saved.version
        logger.info("Loaded line classifier weights v%d", saved.version)
        return True

    def warm_start(self, epochs: int) -> None:
        """Train on the built-in samples without persisting."""
        for _ in range(epochs):
            for line, label in WARM_START_SAMPLES:
                self._step(line_features(line), label)
        logger.debug("Warm-started line classifier for %d epochs", epochs)

    def predict(self, line: str) -> float:
        """Probability that ``line`` is a transaction row."""
        x = line_features(line)
        with self._lock:
            return float(self.output.forward(self.hidden.forward(x))[0])

    def _step(self, x: np.ndarray, label: float) -> float:
        h = self.hidden.forward(x)
        y = self.output.forward(h)
        error = y - label
        delta_out = error * y * (1 - y)
        delta_hidden = (self.output.weights @ delta_out) * h * (1 - h)

        rate = self.config.learning_rate
        self.output.weights -= rate * np.outer(h, delta_out)
        self.output.bias -= rate * delta_out
        self.hidden.weights -= rate * np.outer(x, delta_hidden)
        self.hidden.bias -= rate * delta_hidden
        return float(error[0] ** 2)

    def train_step(self, line: str, label: float) -> float:
        """One online SGD step; weights are persisted afterwards.

        Args:
            line: Raw statement line.
            label: 1.0 for a transaction row, 0.0 otherwise.

        Returns:
            Squared error before the update.
        """
        with self._lock:
            loss = self._step(line_features(line), label)
            snapshot = ClassifierWeights(
                name=WEIGHTS_NAME,
                w_hidden=self.hidden.weights.copy(),
                b_hidden=self.hidden.bias.copy(),
                w_out=self.output.weights.copy(),
                b_out=self.output.bias.copy(),
            )
        if self.store is not None:
            self.version = self.store.save_weights(snapshot)
        logger.debug("Line classifier step label=%.0f loss=%.4f v%d", label, loss, self.version)
        return loss
