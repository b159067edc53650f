"""Ordered short-circuit evaluation of confidence-scored stages.

Both the source detector and the merchant classifier are cascades: each
stage returns a :class:`StageResult`, and evaluation stops at the first
stage whose confidence meets that stage's threshold.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from src.utils.logger import log_stage

T = TypeVar("T")


@dataclass
class StageResult(Generic[T]):
    """Tagged result of one cascade stage."""

    method: str
    confidence: float
    payload: T | None = None
    duration_ms: float = 0.0

    @property
    def matched(self) -> bool:
        return self.payload is not None


@dataclass
class Stage(Generic[T]):
    """A named cascade stage.

    ``threshold`` of ``None`` marks a terminal stage that always accepts.
    """

    name: str
    run: Callable[[], StageResult[T]]
    threshold: float | None = None

    def accepts(self, result: StageResult[T]) -> bool:
        if self.threshold is None:
            return True
        return result.matched and result.confidence >= self.threshold


@dataclass
class CascadeOutcome(Generic[T]):
    """Final stage result plus the trail of every stage that ran."""

    result: StageResult[T]
    trail: list[StageResult[T]] = field(default_factory=list)


def run_cascade(
    stages: list[Stage[T]],
    logger: logging.Logger,
    prefix: str,
    on_stage: Callable[[StageResult[Any]], None] | None = None,
) -> CascadeOutcome[T]:
    """Evaluate stages in order, stopping at the first accepted result.

    When no stage is accepted the last stage's result is returned.

    Args:
        stages: Stages in evaluation order.
        logger: Logger receiving one record per stage.
        prefix: Operation prefix for stage names, e.g. ``"detection"``.
        on_stage: Optional callback invoked with every stage result.

    Returns:
        Accepted (or last) result and the full trail.
    """
    if not stages:
        raise ValueError("A cascade needs at least one stage")

    trail: list[StageResult[T]] = []
    for stage in stages:
        with log_stage(logger, f"{prefix}.{stage.name}") as timing:
            result = stage.run()
            timing.method = result.method
            timing.confidence = result.confidence
        result.duration_ms = timing.duration_ms
        trail.append(result)
        if on_stage is not None:
            on_stage(result)
        if stage.accepts(result):
            return CascadeOutcome(result=result, trail=trail)

    return CascadeOutcome(result=trail[-1], trail=trail)
