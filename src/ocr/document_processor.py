"""Document normalization.

Turns an uploaded statement (PDF, image, or plain text) into corrected
plain text with a confidence score. Native PDF text is preferred; scanned
pages go through the shared OCR worker one page at a time. Results are
cached in the learning store by content hash.
"""

import asyncio
import hashlib
import io
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, ImageSequence, UnidentifiedImageError

from src.errors import DocumentUnreadable, ProcessingCancelled
from src.ocr.corrections import TextCorrector, normalize_whitespace
from src.ocr.ocr_queue import OCRWorker
from src.ocr.pdf_handler import PDFHandler, PdfTextExtractor, TextExtractionService
from src.store.learning_store import LearningStore
from src.store.models import OCRCacheEntry, PatternKind
from src.utils.config import OCRConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

NATIVE_TEXT_CONFIDENCE = 0.95
PLAIN_TEXT_CONFIDENCE = 1.0

_MAGIC_NUMBERS: list[tuple[bytes, str]] = [
    (b"%PDF", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
]

_EXTENSIONS = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".txt": "text/plain",
}


@dataclass
class NormalizedDocument:
    """Plain text of a document and how it was obtained."""

    text: str
    confidence: float
    method: str
    page_count: int
    from_cache: bool
    content_hash: str
    mime_type: str | None = None

    @property
    def lines(self) -> list[str]:
        return [line for line in self.text.splitlines() if line.strip()]


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


_TEXT_CONTROLS = frozenset(b"\t\n\r\f\v")
_MAX_CONTROL_RATIO = 0.1


def _is_binary(content: bytes) -> bool:
    head = content[:4096]
    if not head:
        return False
    if b"\x00" in head:
        return True
    controls = sum(1 for b in head if (b < 0x20 and b not in _TEXT_CONTROLS) or b == 0x7F)
    return controls / len(head) > _MAX_CONTROL_RATIO


def _looks_like_text(content: bytes) -> bool:
    if _is_binary(content):
        return False
    try:
        content[:4096].decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character may straddle the probe boundary.
        return exc.start >= 4090
    return True


def infer_mime_type(content: bytes, filename: str | None = None) -> str | None:
    """Guess a MIME type from magic numbers, then the file extension.

    Args:
        content: Raw document bytes.
        filename: Optional original file name.

    Returns:
        MIME type, or None when the format is not recognized.
    """
    for magic, mime in _MAGIC_NUMBERS:
        if content.startswith(magic):
            return mime
    if filename:
        mime = _EXTENSIONS.get(Path(filename).suffix.lower())
        if mime and (mime != "text/plain" or not _is_binary(content)):
            return mime
    if _looks_like_text(content):
        return "text/plain"
    return None


def raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ProcessingCancelled("Document processing was cancelled")


class DocumentNormalizer:
    """Produces corrected text for statements of any supported format.

    Args:
        store: Learning store for the content-hash cache and learned
            OCR corrections.
        ocr_worker: Shared OCR worker.
        corrector: Fixed-table OCR corrections.
        config: OCR configuration.
        text_extractor: Native text extraction service; pdfplumber by default.
        pdf_handler: PDF page renderer.
    """

    def __init__(
        self,
        store: LearningStore,
        ocr_worker: OCRWorker,
        corrector: TextCorrector,
        config: OCRConfig | None = None,
        text_extractor: TextExtractionService | None = None,
        pdf_handler: PDFHandler | None = None,
    ) -> None:
        self.store = store
        self.ocr_worker = ocr_worker
        self.corrector = corrector
        self.config = config or OCRConfig()
        self.text_extractor = text_extractor or PdfTextExtractor(self.config.min_native_chars)
        self.pdf_handler = pdf_handler or PDFHandler(dpi=self.config.pdf_dpi)

    async def normalize(
        self,
        content: bytes,
        mime_type: str | None = None,
        filename: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> NormalizedDocument:
        """Extract and correct the text of a document.

        Args:
            content: Raw document bytes.
            mime_type: Declared MIME type; inferred when omitted.
            filename: Original file name, used as a format hint.
            cancel_event: Checked between pages.

        Returns:
            Normalized document.

        Raises:
            DocumentUnreadable: Empty, corrupt, or unsupported input.
            ProcessingCancelled: ``cancel_event`` was set.
            ProcessingTimeout: A page exceeded the OCR time limit.
        """
        if not content:
            raise DocumentUnreadable("Document is empty")

        digest = content_hash(content)
        cached = self.store.get_ocr_cache(digest)
        if cached is not None and cached.confidence > self.config.min_cache_confidence:
            logger.info("Serving %s from cache (method=%s)", digest[:12], cached.method)
            return self._finish(cached, from_cache=True, mime_type=mime_type)

        mime = mime_type or infer_mime_type(content, filename)
        raise_if_cancelled(cancel_event)

        if mime == "text/plain":
            entry = self._from_plain_text(content, digest)
        elif mime == "application/pdf":
            entry = await self._from_pdf(content, digest, cancel_event)
        elif mime is not None and mime.startswith("image/"):
            entry = await self._from_image(content, digest, cancel_event)
        else:
            raise DocumentUnreadable(f"Unsupported document type: {mime or 'unknown'}")

        if entry.text.strip():
            self.store.put_ocr_cache(entry)
        return self._finish(entry, from_cache=False, mime_type=mime)

    def _finish(
        self, entry: OCRCacheEntry, from_cache: bool, mime_type: str | None
    ) -> NormalizedDocument:
        if entry.method.startswith("ocr"):
            learned = self.store.patterns_by_kind(PatternKind.OCR_CORRECTION)
            text = self.corrector.correct(entry.text, learned)
        else:
            text = normalize_whitespace(entry.text)
        return NormalizedDocument(
            text=text,
            confidence=entry.confidence,
            method=entry.method,
            page_count=entry.page_count,
            from_cache=from_cache,
            content_hash=entry.content_hash,
            mime_type=mime_type,
        )

    def _from_plain_text(self, content: bytes, digest: str) -> OCRCacheEntry:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = content.decode("cp1250", errors="replace")
        if _is_binary(content):
            raise DocumentUnreadable("Unsupported document type: binary content declared as text")
        if not text.strip():
            raise DocumentUnreadable("Text document has no content")
        return OCRCacheEntry(
            content_hash=digest,
            text=text,
            confidence=PLAIN_TEXT_CONFIDENCE,
            method="plain_text",
            page_count=1,
        )

    async def _from_pdf(
        self, content: bytes, digest: str, cancel_event: asyncio.Event | None
    ) -> OCRCacheEntry:
        probe = await asyncio.to_thread(self.text_extractor.extract, content, 1)
        if probe.page_count == 0:
            raise DocumentUnreadable("PDF has no pages")

        if probe.has_extractable_text:
            full = await asyncio.to_thread(self.text_extractor.extract, content)
            logger.info("Using native text layer (%d pages)", full.page_count)
            return OCRCacheEntry(
                content_hash=digest,
                text=full.text,
                confidence=NATIVE_TEXT_CONFIDENCE,
                method="native_text",
                page_count=full.page_count,
            )

        logger.info("No text layer, running OCR on %d page(s)", probe.page_count)
        pages = []
        for page_number in range(1, probe.page_count + 1):
            raise_if_cancelled(cancel_event)
            image = await asyncio.to_thread(self.pdf_handler.render_page, content, page_number)
            pages.append(await self.ocr_worker.recognize(image))
        return self._ocr_entry(digest, pages)

    async def _from_image(
        self, content: bytes, digest: str, cancel_event: asyncio.Event | None
    ) -> OCRCacheEntry:
        try:
            with Image.open(io.BytesIO(content)) as img:
                frames = [np.array(frame.convert("RGB")) for frame in ImageSequence.Iterator(img)]
        except (UnidentifiedImageError, OSError) as exc:
            raise DocumentUnreadable(f"Cannot decode image: {exc}") from exc

        pages = []
        for frame in frames:
            raise_if_cancelled(cancel_event)
            pages.append(await self.ocr_worker.recognize(frame))
        return self._ocr_entry(digest, pages)

    def _ocr_entry(self, digest: str, pages: list) -> OCRCacheEntry:
        if not pages:
            raise DocumentUnreadable("Document has no pages")
        method = "ocr_fallback" if all(p.method == "ocr_fallback" for p in pages) else "ocr"
        return OCRCacheEntry(
            content_hash=digest,
            text="\n\n".join(p.text for p in pages),
            confidence=sum(p.confidence for p in pages) / len(pages),
            method=method,
            page_count=len(pages),
        )
