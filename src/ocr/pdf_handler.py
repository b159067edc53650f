"""PDF access for statement documents.

``PdfTextExtractor`` reads the embedded text layer with pdfplumber;
``PDFHandler`` renders pages to images for OCR when there is none.
"""

import io
from dataclasses import dataclass
from typing import Protocol

import numpy as np
import pdfplumber
from pdf2image import convert_from_bytes

from src.errors import DocumentUnreadable
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ExtractedText:
    """Text layer of a PDF (or of its first pages)."""

    text: str
    has_extractable_text: bool
    page_count: int


class TextExtractionService(Protocol):
    """Reads native text out of a document."""

    def extract(self, document: bytes, max_pages: int | None = None) -> ExtractedText: ...


class PdfTextExtractor:
    """Extracts the text layer of a PDF with pdfplumber.

    Args:
        min_chars: Minimum stripped text length for the document to count
            as having extractable text.
    """

    def __init__(self, min_chars: int = 50) -> None:
        self.min_chars = min_chars

    def extract(self, document: bytes, max_pages: int | None = None) -> ExtractedText:
        """Extract text from up to ``max_pages`` pages.

        Args:
            document: Raw PDF bytes.
            max_pages: Page limit; all pages when ``None``.

        Returns:
            Joined page text, one page per block separated by blank lines.

        Raises:
            DocumentUnreadable: If the PDF cannot be parsed.
        """
        pages_text: list[str] = []
        try:
            with pdfplumber.open(io.BytesIO(document)) as pdf:
                page_count = len(pdf.pages)
                for i, page in enumerate(pdf.pages):
                    if max_pages is not None and i >= max_pages:
                        break
                    text = page.extract_text() or ""
                    if text.strip():
                        pages_text.append(text)
        except Exception as exc:
            raise DocumentUnreadable(f"Cannot read PDF: {exc}") from exc

        text = "\n\n".join(pages_text)
        has_text = len(text.strip()) > self.min_chars
        logger.debug(
            "Extracted %d chars of native text from %d page(s)", len(text), len(pages_text)
        )
        return ExtractedText(text=text, has_extractable_text=has_text, page_count=page_count)


class PDFHandler:
    """Renders PDF pages to images for OCR.

    Args:
        dpi: Resolution for PDF rendering. Higher values produce
            better OCR results but use more memory.
    """

    def __init__(self, dpi: int = 300) -> None:
        self.dpi = dpi

    def render_page(self, document: bytes, page_number: int) -> np.ndarray:
        """Render one page (1-based) to an RGB numpy array.

        Raises:
            DocumentUnreadable: If the page cannot be rendered.
        """
        try:
            images = convert_from_bytes(
                document, dpi=self.dpi, first_page=page_number, last_page=page_number
            )
        except Exception as exc:
            raise DocumentUnreadable(f"PDF rendering failed: {exc}") from exc
        if not images:
            raise DocumentUnreadable(f"PDF page {page_number} rendered no image")
        logger.debug("Rendered PDF page %d at %d DPI", page_number, self.dpi)
        return np.array(images[0].convert("RGB"))
