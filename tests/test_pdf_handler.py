"""Tests for PDF text extraction and page rendering."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

from src.errors import DocumentUnreadable
from src.ocr.pdf_handler import PDFHandler, PdfTextExtractor


def _mock_pil_image(width: int = 300, height: int = 200) -> Image.Image:
    """Create a mock PIL image."""
    return Image.fromarray(np.zeros((height, width, 3), dtype=np.uint8))


def _mock_pdf(page_texts: list[str | None]) -> MagicMock:
    """Create a pdfplumber document whose pages return the given text."""
    pages = []
    for text in page_texts:
        page = MagicMock()
        page.extract_text.return_value = text
        pages.append(page)
    pdf = MagicMock()
    pdf.pages = pages
    pdf.__enter__.return_value = pdf
    return pdf


LONG_PAGE = "05.09.2025 LIDL BUCURESTI -125.40 RON\n06.09.2025 KAUFLAND -89.99 RON"


class TestPdfTextExtractor:
    """Tests for the PdfTextExtractor class."""

    @patch("src.ocr.pdf_handler.pdfplumber")
    def test_native_text_detected(self, mock_pdfplumber: MagicMock) -> None:
        mock_pdfplumber.open.return_value = _mock_pdf([LONG_PAGE, None, "page three"])
        result = PdfTextExtractor(min_chars=50).extract(b"%PDF-1.4")

        assert result.has_extractable_text is True
        assert result.page_count == 3
        assert result.text == LONG_PAGE + "\n\npage three"

    @patch("src.ocr.pdf_handler.pdfplumber")
    def test_short_text_counts_as_scanned(self, mock_pdfplumber: MagicMock) -> None:
        mock_pdfplumber.open.return_value = _mock_pdf(["  x  "])
        result = PdfTextExtractor(min_chars=50).extract(b"%PDF-1.4")
        assert result.has_extractable_text is False

    @patch("src.ocr.pdf_handler.pdfplumber")
    def test_max_pages(self, mock_pdfplumber: MagicMock) -> None:
        pdf = _mock_pdf(["first", "second"])
        mock_pdfplumber.open.return_value = pdf
        result = PdfTextExtractor().extract(b"%PDF-1.4", max_pages=1)

        assert result.text == "first"
        assert result.page_count == 2
        pdf.pages[1].extract_text.assert_not_called()

    @patch("src.ocr.pdf_handler.pdfplumber")
    def test_corrupt_pdf(self, mock_pdfplumber: MagicMock) -> None:
        mock_pdfplumber.open.side_effect = ValueError("no trailer")
        with pytest.raises(DocumentUnreadable, match="Cannot read PDF"):
            PdfTextExtractor().extract(b"garbage")


class TestPDFHandler:
    """Tests for the PDFHandler class."""

    def test_init_default_dpi(self) -> None:
        assert PDFHandler().dpi == 300

    @patch("src.ocr.pdf_handler.convert_from_bytes")
    def test_render_page(self, mock_convert: MagicMock) -> None:
        mock_convert.return_value = [_mock_pil_image(width=120, height=80)]
        image = PDFHandler(dpi=150).render_page(b"%PDF-1.4", 2)

        assert isinstance(image, np.ndarray)
        assert image.shape == (80, 120, 3)
        mock_convert.assert_called_once_with(b"%PDF-1.4", dpi=150, first_page=2, last_page=2)

    @patch("src.ocr.pdf_handler.convert_from_bytes")
    def test_render_page_empty(self, mock_convert: MagicMock) -> None:
        mock_convert.return_value = []
        with pytest.raises(DocumentUnreadable):
            PDFHandler().render_page(b"%PDF-1.4", 1)

    @patch("src.ocr.pdf_handler.convert_from_bytes")
    def test_render_page_failure(self, mock_convert: MagicMock) -> None:
        mock_convert.side_effect = OSError("broken")
        with pytest.raises(DocumentUnreadable, match="rendering failed"):
            PDFHandler().render_page(b"%PDF-1.4", 1)
