"""Statement processing pipeline.

Wires the document normalizer, source detector, line extractor, merchant
classifier and feedback processor around one shared learning store:

    document -> text -> source -> candidate lines -> enriched transactions

Feedback is applied in background tasks so callers never wait on learning.
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.classification.category_rules import load_category_rules
from src.classification.merchant_classifier import ClassificationContext, MerchantClassifier
from src.detection.profiles import load_source_profiles, seed_source_patterns
from src.detection.source_detector import SourceDetection, SourceDetector
from src.errors import ProcessingTimeout
from src.extraction.line_classifier import LineClassifier
from src.extraction.line_extractor import LineExtractor, Transaction
from src.feedback.processor import FeedbackOutcome, FeedbackProcessor
from src.ocr.corrections import TextCorrector
from src.ocr.document_processor import DocumentNormalizer, NormalizedDocument, raise_if_cancelled
from src.ocr.ocr_queue import OCRWorker
from src.ocr.page_preprocessor import PagePreprocessor
from src.ocr.pdf_handler import PDFHandler, TextExtractionService
from src.ocr.tesseract_engine import OCREngine, create_ocr_engine
from src.store.learning_store import LearningStore
from src.store.models import PerformanceSample
from src.utils.config import AppConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

# Transactions classified per worker-thread batch.
_ENRICH_BATCH = 50


@dataclass
class Document:
    """An uploaded statement."""

    content: bytes
    mime_type: str | None = None
    filename: str | None = None

    @classmethod
    def from_path(cls, path: Path) -> "Document":
        return cls(content=path.read_bytes(), filename=path.name)


@dataclass
class StatementResult:
    """Transactions of one document plus how they were obtained."""

    transactions: list[Transaction]
    detection: SourceDetection
    document: NormalizedDocument
    processing_time_ms: float = 0.0


def _as_document(document: Document | bytes | Path | str) -> Document:
    if isinstance(document, Document):
        return document
    if isinstance(document, bytes):
        return Document(content=document)
    return Document.from_path(Path(document))


class StatementPipeline:
    """End-to-end statement processing with online learning.

    Args:
        config: Application configuration; defaults when omitted.
        store: Learning store to share; one is opened at
            ``config.store.db_path`` when omitted and closed with the
            pipeline.
        ocr_engine: OCR engine; Tesseract (or its fallback) by default.
        text_extractor: Native PDF text service; pdfplumber by default.
        pdf_handler: PDF page renderer; pdf2image by default.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        store: LearningStore | None = None,
        ocr_engine: OCREngine | None = None,
        text_extractor: TextExtractionService | None = None,
        pdf_handler: PDFHandler | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self._owns_store = store is None
        self.store = store or LearningStore(
            self.config.store.db_path, max_retries=self.config.store.max_retries
        )

        rules = self.config.rules
        self.profiles = load_source_profiles(rules.sources_path)
        seed_source_patterns(self.store, self.profiles)

        self.ocr_worker = OCRWorker(
            ocr_engine or create_ocr_engine(self.config.ocr),
            PagePreprocessor(self.config.ocr),
            timeout_seconds=self.config.ocr.timeout_seconds,
        )
        self.normalizer = DocumentNormalizer(
            self.store,
            self.ocr_worker,
            TextCorrector(rules.corrections_path),
            self.config.ocr,
            text_extractor=text_extractor,
            pdf_handler=pdf_handler,
        )
        self.detector = SourceDetector(self.store, self.profiles, self.config.detection)
        self.line_classifier = LineClassifier(self.store, self.config.learning)
        self.extractor = LineExtractor(self.profiles.generic, self.config.extraction)
        self.classifier = MerchantClassifier(
            self.store, load_category_rules(rules.categories_path), self.config.classification
        )
        self.classifier.seed_known_merchants()
        self.feedback = FeedbackProcessor(
            self.store, self.line_classifier, self.detector, self.config.learning
        )
        self._feedback_tasks: set[asyncio.Task] = set()

    async def process(
        self,
        document: Document | bytes | Path | str,
        hint: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[Transaction]:
        """Extract and classify the transactions of a statement.

        Args:
            document: Raw bytes, a file path, or a :class:`Document`.
            hint: Source id that skips detection when it is known.
            cancel_event: Set by the caller to abandon processing.

        Returns:
            Enriched transactions in document order.

        Raises:
            DocumentUnreadable: Empty, corrupt, or unsupported input.
            ProcessingTimeout: OCR or the whole document took too long.
            ProcessingCancelled: ``cancel_event`` was set.
        """
        result = await self.process_document(document, hint, cancel_event)
        return result.transactions

    async def process_document(
        self,
        document: Document | bytes | Path | str,
        hint: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StatementResult:
        """Like :meth:`process`, also returning the detection and text."""
        doc = _as_document(document)
        limit = self.config.pipeline_timeout_seconds
        try:
            return await asyncio.wait_for(self._run(doc, hint, cancel_event), limit)
        except asyncio.TimeoutError as exc:
            raise ProcessingTimeout(f"Document processing exceeded {limit:.0f}s") from exc

    def _detect(self, text: str, hint: str | None) -> SourceDetection:
        if hint:
            source_id = hint.strip().upper()
            if source_id in self.profiles.profiles:
                logger.info("Using source hint %s", source_id)
                return SourceDetection(source=source_id, confidence=1.0, method="hint")
            logger.warning("Unknown source hint %r, detecting instead", hint)
        return self.detector.detect(text)

    def _enrich_batch(
        self, transactions: list[Transaction], context: ClassificationContext
    ) -> None:
        for transaction in transactions:
            self.classifier.enrich(transaction, context)

    async def _run(
        self, doc: Document, hint: str | None, cancel_event: asyncio.Event | None
    ) -> StatementResult:
        start = time.perf_counter()
        normalized = await self.normalizer.normalize(
            doc.content, doc.mime_type, doc.filename, cancel_event
        )

        raise_if_cancelled(cancel_event)
        detection = self._detect(normalized.text, hint)
        profile = self.profiles.get(detection.source)

        raise_if_cancelled(cancel_event)
        transactions = self.extractor.extract(
            normalized.lines,
            profile,
            source_confidence=detection.confidence,
            document_hash=normalized.content_hash,
            scorer=self.line_classifier,
        )

        context = ClassificationContext()
        for offset in range(0, len(transactions), _ENRICH_BATCH):
            raise_if_cancelled(cancel_event)
            batch = transactions[offset : offset + _ENRICH_BATCH]
            await asyncio.to_thread(self._enrich_batch, batch, context)

        self.store.save_transactions(
            normalized.content_hash,
            [
                {**t.to_dict(), "rawLine": t.raw_line, "documentHash": normalized.content_hash}
                for t in transactions
            ],
        )

        elapsed_ms = (time.perf_counter() - start) * 1000
        mean_confidence = (
            sum(t.confidence for t in transactions) / len(transactions) if transactions else 0.0
        )
        self.store.log_performance(
            PerformanceSample(
                operation="pipeline.process",
                duration_ms=elapsed_ms,
                confidence=mean_confidence,
                metadata={
                    "source": detection.source,
                    "method": normalized.method,
                    "transactions": len(transactions),
                },
            )
        )
        logger.info(
            "Processed document %s: source=%s (%.2f), %d transactions in %.0f ms",
            normalized.content_hash[:12],
            detection.source,
            detection.confidence,
            len(transactions),
            elapsed_ms,
        )
        return StatementResult(
            transactions=transactions,
            detection=detection,
            document=normalized,
            processing_time_ms=elapsed_ms,
        )

    def submit_feedback(self, feedback: dict[str, Any]) -> None:
        """Queue a correction for background learning.

        Args:
            feedback: ``{"transactionId": ..., "corrections": {...}}``.

        Raises:
            ValueError: If the transaction id is missing.
        """
        transaction_id = feedback.get("transactionId") or feedback.get("transaction_id")
        if not transaction_id:
            raise ValueError("Feedback needs a transactionId")
        corrections = dict(feedback.get("corrections") or {})

        task = asyncio.get_running_loop().create_task(
            self.apply_feedback(transaction_id, corrections)
        )
        self._feedback_tasks.add(task)
        task.add_done_callback(self._feedback_done)

    async def apply_feedback(
        self, transaction_id: str, corrections: dict[str, Any]
    ) -> FeedbackOutcome:
        """Apply a correction now, in a worker thread."""
        original = self.store.get_transaction(transaction_id)
        if original is None:
            logger.warning("Feedback for unknown transaction %s", transaction_id)
            original = {"id": transaction_id}

        document_text = ""
        if corrections.get("source") and original.get("documentHash"):
            cached = self.store.get_ocr_cache(original["documentHash"])
            if cached is not None:
                document_text = cached.text

        return await asyncio.to_thread(self.feedback.apply, original, corrections, document_text)

    def _feedback_done(self, task: asyncio.Task) -> None:
        self._feedback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Feedback task failed: %s", exc, exc_info=exc)

    async def drain(self) -> list[FeedbackOutcome]:
        """Wait for every queued feedback task.

        Returns:
            Outcomes of the tasks that completed.
        """
        outcomes: list[FeedbackOutcome] = []
        while self._feedback_tasks:
            results = await asyncio.gather(*list(self._feedback_tasks), return_exceptions=True)
            outcomes.extend(r for r in results if isinstance(r, FeedbackOutcome))
        return outcomes

    def get_stats(self) -> dict[str, Any]:
        """Read-only monitoring summary of the learning store."""
        counts = self.store.stats()
        timings: dict[str, list[tuple[float, float]]] = {}
        for sample in self.store.performance_samples(days=self.config.store.performance_days):
            timings.setdefault(sample.operation, []).append((sample.duration_ms, sample.confidence))

        return {
            "perSourceAccuracy": self.store.source_accuracy(),
            "merchantCount": counts["merchants"],
            "feedbackCount": counts["feedback"],
            "patternCount": counts["source_patterns"],
            "stageTimings": {
                operation: {
                    "count": len(values),
                    "avgDurationMs": round(sum(d for d, _ in values) / len(values), 3),
                    "avgConfidence": round(sum(c for _, c in values) / len(values), 4),
                }
                for operation, values in sorted(timings.items())
            },
        }

    def cleanup(self) -> dict[str, int]:
        """Apply the configured retention rules to the learning store."""
        settings = self.config.store
        return self.store.cleanup(
            min_occurrences=settings.merchant_min_occurrences,
            unseen_days=settings.merchant_unseen_days,
            feedback_keep=settings.feedback_keep,
            performance_days=settings.performance_days,
            ocr_cache_days=settings.ocr_cache_days,
        )

    async def close(self) -> None:
        """Finish pending feedback, stop the OCR worker, close an owned store."""
        await self.drain()
        await self.ocr_worker.close()
        if self._owns_store:
            self.store.close()
