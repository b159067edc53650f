"""Tests for document normalization."""

import asyncio
import io

import numpy as np
import pytest
from PIL import Image

from src.errors import DocumentUnreadable, ProcessingCancelled
from src.ocr.corrections import TextCorrector
from src.ocr.document_processor import (
    DocumentNormalizer,
    NormalizedDocument,
    content_hash,
    infer_mime_type,
)
from src.ocr.ocr_queue import OCRWorker
from src.ocr.pdf_handler import ExtractedText
from src.ocr.tesseract_engine import FallbackOCREngine, PageText
from src.store.learning_store import LearningStore
from src.store.models import OCRCacheEntry, PatternKind
from src.utils.config import OCRConfig, RulesConfig

OCR_LINE = "05.09.2025 LIDI BUCURESTI -125.40 RON"


class FakeExtractor:
    """Text layer of a PDF, given up front."""

    def __init__(self, text: str, page_count: int = 1) -> None:
        self.text = text
        self.page_count = page_count
        self.calls: list[int | None] = []

    def extract(self, document: bytes, max_pages: int | None = None) -> ExtractedText:
        self.calls.append(max_pages)
        return ExtractedText(
            text=self.text,
            has_extractable_text=len(self.text.strip()) > 50,
            page_count=self.page_count,
        )


class FakePDFHandler:
    def __init__(self) -> None:
        self.rendered: list[int] = []

    def render_page(self, document: bytes, page_number: int) -> np.ndarray:
        self.rendered.append(page_number)
        return np.zeros((20, 20, 3), dtype=np.uint8)


class FixedEngine:
    def recognize(self, page_image: np.ndarray) -> PageText:
        return PageText(text=OCR_LINE, confidence=0.8)


def _normalizer(
    store: LearningStore,
    extractor: FakeExtractor | None = None,
    handler: FakePDFHandler | None = None,
    engine=None,
) -> DocumentNormalizer:
    config = OCRConfig()
    return DocumentNormalizer(
        store,
        OCRWorker(engine or FixedEngine()),
        TextCorrector(RulesConfig().corrections_path),
        config,
        text_extractor=extractor or FakeExtractor(""),
        pdf_handler=handler or FakePDFHandler(),
    )


def _normalize(normalizer: DocumentNormalizer, content: bytes, **kwargs) -> NormalizedDocument:
    async def run() -> NormalizedDocument:
        try:
            return await normalizer.normalize(content, **kwargs)
        finally:
            await normalizer.ocr_worker.close()

    return asyncio.run(run())


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(np.full((30, 60, 3), 255, dtype=np.uint8)).save(buffer, format="PNG")
    return buffer.getvalue()


class TestInferMimeType:
    """Tests for infer_mime_type."""

    def test_magic_numbers(self) -> None:
        assert infer_mime_type(b"%PDF-1.7 ...") == "application/pdf"
        assert infer_mime_type(_png_bytes()) == "image/png"
        assert infer_mime_type(b"\xff\xd8\xff\xe0rest") == "image/jpeg"

    def test_extension_fallback(self) -> None:
        assert infer_mime_type(b"\x00\x01", "scan.TIFF") == "image/tiff"

    def test_text_fallback(self) -> None:
        assert infer_mime_type("Extras de cont București".encode()) == "text/plain"

    def test_unknown_binary(self) -> None:
        assert infer_mime_type(b"\x00\x01\x02\x03") is None

    def test_text_extension_needs_text_content(self) -> None:
        assert infer_mime_type(b"\x00\x01\x02\x03", "extras.txt") is None
        assert infer_mime_type(b"\x01\x02\x03\x04\x05 ab", "extras.txt") is None
        assert infer_mime_type("Plat\u0103 POS".encode("cp1250"), "extras.txt") == "text/plain"


class TestPlainText:
    """Tests for plain text documents and the cache."""

    def test_plain_text(self, store: LearningStore, statement_text: str) -> None:
        doc = _normalize(_normalizer(store), statement_text.encode())
        assert doc.method == "plain_text"
        assert doc.confidence == 1.0
        assert doc.from_cache is False
        assert doc.lines[0] == "BANCA COMERCIALA ROMANA"
        assert doc.content_hash == content_hash(statement_text.encode())

    def test_second_read_served_from_cache(self, store: LearningStore, statement_text: str) -> None:
        content = statement_text.encode()
        first = _normalize(_normalizer(store), content)
        again = _normalize(_normalizer(store), content)
        assert again.from_cache is True
        assert again.text == first.text

    def test_low_confidence_cache_ignored(self, store: LearningStore) -> None:
        content = b"05.09.2025 LIDL -10.00 RON"
        store.put_ocr_cache(OCRCacheEntry(content_hash(content), "stale", 0.2, "ocr", 1))
        doc = _normalize(_normalizer(store), content)
        assert doc.from_cache is False
        assert doc.text == "05.09.2025 LIDL -10.00 RON"

    def test_empty_document(self, store: LearningStore) -> None:
        with pytest.raises(DocumentUnreadable, match="empty"):
            _normalize(_normalizer(store), b"")

    def test_blank_text_document(self, store: LearningStore) -> None:
        with pytest.raises(DocumentUnreadable):
            _normalize(_normalizer(store), b"   \n\n ", mime_type="text/plain")

    def test_unsupported_format(self, store: LearningStore) -> None:
        with pytest.raises(DocumentUnreadable, match="Unsupported"):
            _normalize(_normalizer(store), b"\x00\x01\x02\x03")

    def test_binary_declared_as_text(self, store: LearningStore) -> None:
        with pytest.raises(DocumentUnreadable, match="Unsupported"):
            _normalize(_normalizer(store), b"\x00\x01\x02\x03", mime_type="text/plain")


class TestPdfDocuments:
    """Tests for native-text and scanned PDFs."""

    def test_native_text_preferred(self, store: LearningStore, statement_text: str) -> None:
        extractor = FakeExtractor(statement_text, page_count=1)
        handler = FakePDFHandler()
        doc = _normalize(_normalizer(store, extractor, handler), b"%PDF-1.4 native")

        assert doc.method == "native_text"
        assert doc.confidence == 0.95
        assert extractor.calls == [1, None]
        assert handler.rendered == []

    def test_scanned_pages_go_through_ocr(self, store: LearningStore) -> None:
        store.upsert_pattern("BCR", "LIDI", PatternKind.OCR_CORRECTION, 0.8, replacement="LIDL")
        handler = FakePDFHandler()
        doc = _normalize(
            _normalizer(store, FakeExtractor("", page_count=2), handler), b"%PDF-1.4 scan"
        )

        assert doc.method == "ocr"
        assert doc.page_count == 2
        assert doc.confidence == pytest.approx(0.8)
        assert handler.rendered == [1, 2]
        assert "LIDL BUCURESTI" in doc.text
        assert "LIDI" not in doc.text

    def test_cached_ocr_text_uses_current_corrections(self, store: LearningStore) -> None:
        content = b"%PDF-1.4 scan"
        _normalize(_normalizer(store, FakeExtractor("", page_count=1)), content)
        store.upsert_pattern("BCR", "LIDI", PatternKind.OCR_CORRECTION, 0.8, replacement="LIDL")

        doc = _normalize(_normalizer(store, FakeExtractor("", page_count=1)), content)
        assert doc.from_cache is True
        assert "LIDL BUCURESTI" in doc.text

    def test_pdf_without_pages(self, store: LearningStore) -> None:
        with pytest.raises(DocumentUnreadable, match="no pages"):
            _normalize(_normalizer(store, FakeExtractor("", page_count=0)), b"%PDF-1.4")

    def test_fallback_engine_result_not_cached(self, store: LearningStore) -> None:
        content = b"%PDF-1.4 unreadable"
        normalizer = _normalizer(store, FakeExtractor(""), engine=FallbackOCREngine(0.1))
        doc = _normalize(normalizer, content)

        assert doc.method == "ocr_fallback"
        assert doc.text == ""
        assert doc.confidence == pytest.approx(0.1)
        assert store.get_ocr_cache(content_hash(content)) is None


class TestImages:
    """Tests for image documents."""

    def test_png_is_recognized(self, store: LearningStore) -> None:
        doc = _normalize(_normalizer(store), _png_bytes())
        assert doc.method == "ocr"
        assert doc.page_count == 1
        assert doc.mime_type == "image/png"

    def test_corrupt_image(self, store: LearningStore) -> None:
        with pytest.raises(DocumentUnreadable, match="decode"):
            _normalize(_normalizer(store), b"\x89PNG\r\n\x1a\nnot really")


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_before_work(self, store: LearningStore, statement_text: str) -> None:
        async def run() -> None:
            event = asyncio.Event()
            event.set()
            await _normalizer(store).normalize(statement_text.encode(), cancel_event=event)

        with pytest.raises(ProcessingCancelled):
            asyncio.run(run())
