"""Centralized logging setup for the statement pipeline.

Provides a structured logging configuration with consistent formatting
across all modules, plus a timing helper that records the method,
duration, and confidence of each pipeline stage.
"""

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a standard format.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


@dataclass
class StageTiming:
    """Timing and outcome of one pipeline stage.

    ``confidence`` and ``method`` are filled in by the caller before the
    stage block exits.
    """

    stage: str
    method: str = ""
    confidence: float = 0.0
    duration_ms: float = 0.0


@contextmanager
def log_stage(logger: logging.Logger, stage: str) -> Iterator[StageTiming]:
    """Time a pipeline stage and log its method, duration and confidence.

    The record is logged whether the block succeeds or raises.

    Args:
        logger: Logger to write the stage record to.
        stage: Stage name, e.g. ``"detection.signature"``.

    Yields:
        Mutable timing record for the caller to annotate.
    """
    timing = StageTiming(stage=stage, method=stage)
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "stage=%s method=%s duration_ms=%.2f confidence=%.3f",
            timing.stage,
            timing.method,
            timing.duration_ms,
            timing.confidence,
        )
