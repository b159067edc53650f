"""Page image cleanup before OCR.

Statement scans are mostly dark text on light paper with uneven lighting
and phone-camera tilt. Pages are converted to grayscale, straightened,
denoised with an edge-preserving filter, contrast-equalized with CLAHE,
and adaptively thresholded.
"""

import cv2
import numpy as np

from src.utils.config import OCRConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert RGB, RGBA or grayscale input to a single uint8 channel."""
    if image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_RGBA2RGB)
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    if image.dtype != np.uint8:
        image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return image


def estimate_skew(gray: np.ndarray) -> float:
    """Median angle in degrees of long near-horizontal lines, 0.0 if none."""
    edges = cv2.Canny(gray, 50, 150, apertureSize=3)
    lines = cv2.HoughLinesP(edges, 1, np.pi / 180, 100, minLineLength=100, maxLineGap=10)
    if lines is None:
        return 0.0
    angles = [np.degrees(np.arctan2(y2 - y1, x2 - x1)) for x1, y1, x2, y2 in lines[:, 0]]
    # Vertical rules (table borders) would dominate otherwise.
    angles = [a for a in angles if abs(a) < 45]
    return float(np.median(angles)) if angles else 0.0


def straighten(gray: np.ndarray, min_angle: float = 0.5) -> np.ndarray:
    angle = estimate_skew(gray)
    if abs(angle) < min_angle:
        return gray
    h, w = gray.shape[:2]
    matrix = cv2.getRotationMatrix2D((w // 2, h // 2), angle, 1.0)
    logger.debug("Straightening page by %.2f degrees", angle)
    return cv2.warpAffine(
        gray, matrix, (w, h), flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REPLICATE
    )


class PagePreprocessor:
    """Applies the configured cleanup steps to a page image.

    Args:
        config: OCR configuration with the preprocessing flags.
    """

    def __init__(self, config: OCRConfig) -> None:
        self.config = config

    def process(self, image: np.ndarray) -> np.ndarray:
        """Clean up a page image for OCR.

        Args:
            image: Page image as rendered or decoded (RGB, RGBA or gray).

        Returns:
            Grayscale (or binary) uint8 image.
        """
        gray = to_grayscale(image)
        if not self.config.preprocess_enabled:
            return gray

        if self.config.deskew_enabled:
            gray = straighten(gray)
        if self.config.denoise_enabled:
            gray = cv2.bilateralFilter(gray, 9, 75, 75)
        if self.config.contrast_enabled:
            clahe = cv2.createCLAHE(clipLimit=self.config.clahe_clip_limit, tileGridSize=(8, 8))
            gray = clahe.apply(gray)
        if self.config.binarize_enabled:
            gray = cv2.adaptiveThreshold(
                gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, 31, 10
            )

        logger.debug(
            "Preprocessed page %dx%d (contrast std %.1f)", gray.shape[1], gray.shape[0], gray.std()
        )
        return gray
