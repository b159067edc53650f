"""OCR engines.

``TesseractEngine`` wraps pytesseract for Romanian and English statements.
``FallbackOCREngine`` stands in when Tesseract or its language data is
missing, so a machine without OCR still processes native-text documents.
"""

from dataclasses import dataclass
from typing import Protocol

import numpy as np
import pytesseract
from PIL import Image

from src.errors import OCREngineUnavailable
from src.utils.config import OCRConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PageText:
    """Recognized text of one page image."""

    text: str
    confidence: float
    method: str = "ocr"


class OCREngine(Protocol):
    """Anything that turns a page image into text."""

    def recognize(self, page_image: np.ndarray) -> PageText: ...


class TesseractEngine:
    """Tesseract OCR for statement pages.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        languages: Tesseract language string, e.g. ``"ron+eng"``.
        psm: Page segmentation mode; 6 treats the page as one text block,
            which keeps statement rows on single lines.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        languages: str = "ron+eng",
        psm: int = 6,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.languages = languages
        self.psm = psm

    def check_available(self) -> None:
        """Verify the binary runs and the language data is installed.

        Raises:
            OCREngineUnavailable: If Tesseract cannot be used.
        """
        try:
            version = pytesseract.get_tesseract_version()
            installed = set(pytesseract.get_languages(config=""))
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError, OSError) as exc:
            raise OCREngineUnavailable(f"Tesseract is not usable: {exc}") from exc

        missing = [lang for lang in self.languages.split("+") if lang not in installed]
        if missing:
            raise OCREngineUnavailable(f"Tesseract language data missing: {', '.join(missing)}")
        logger.info("Tesseract %s available with languages %s", version, self.languages)

    def recognize(self, page_image: np.ndarray) -> PageText:
        """Recognize the text of a page image.

        Args:
            page_image: Preprocessed page as a numpy array.

        Returns:
            Page text and the mean word confidence in [0, 1].
        """
        config = f"--psm {self.psm}"
        pil_image = Image.fromarray(page_image)
        text = pytesseract.image_to_string(pil_image, lang=self.languages, config=config)
        data = pytesseract.image_to_data(
            pil_image,
            lang=self.languages,
            config=config,
            output_type=pytesseract.Output.DICT,
        )

        confidences = [
            float(conf)
            for conf, word in zip(data["conf"], data["text"])
            if float(conf) > 0 and str(word).strip()
        ]
        confidence = sum(confidences) / len(confidences) / 100.0 if confidences else 0.0

        logger.info(
            "OCR recognized %d words with average confidence %.2f",
            len(confidences),
            confidence,
        )
        return PageText(text=text, confidence=confidence)


class FallbackOCREngine:
    """Returns empty text at a fixed low confidence."""

    def __init__(self, confidence: float = 0.1) -> None:
        self.confidence = confidence

    def recognize(self, page_image: np.ndarray) -> PageText:
        logger.warning("No OCR engine available, page %s left unread", page_image.shape)
        return PageText(text="", confidence=self.confidence, method="ocr_fallback")


def create_ocr_engine(config: OCRConfig) -> OCREngine:
    """Build the Tesseract engine, or the fallback when it is unusable."""
    engine = TesseractEngine(
        tesseract_cmd=config.tesseract_cmd,
        languages=config.languages,
        psm=config.psm,
    )
    try:
        engine.check_available()
    except OCREngineUnavailable as exc:
        logger.warning("%s; using fallback OCR engine", exc)
        return FallbackOCREngine(confidence=config.fallback_confidence)
    return engine
