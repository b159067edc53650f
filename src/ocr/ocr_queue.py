"""Single shared OCR worker.

Tesseract is CPU-bound and not safe to drive from many threads against one
engine, so every page from every document goes through one FIFO queue
served by one consumer task. The blocking call runs in a worker thread so
the event loop keeps serving other documents.
"""

import asyncio
from dataclasses import dataclass

import numpy as np

from src.errors import ProcessingTimeout
from src.ocr.page_preprocessor import PagePreprocessor
from src.ocr.tesseract_engine import OCREngine, PageText
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class OCRJob:
    """A queued page and the future its caller awaits."""

    image: np.ndarray
    future: asyncio.Future


class OCRWorker:
    """Serializes OCR jobs onto one engine.

    Cancelling the awaiting caller cancels its queued job. A job that is
    already running finishes in its thread and the result is discarded.

    Args:
        engine: OCR engine shared by all jobs.
        preprocessor: Optional page cleanup run before recognition.
        timeout_seconds: Per-page limit, counted from when the worker
            picks the page up.
    """

    def __init__(
        self,
        engine: OCREngine,
        preprocessor: PagePreprocessor | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.engine = engine
        self.preprocessor = preprocessor
        self.timeout_seconds = timeout_seconds
        self._queue: asyncio.Queue[OCRJob] | None = None
        self._consumer: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.completed = 0

    def _ensure_started(self) -> asyncio.Queue[OCRJob]:
        loop = asyncio.get_running_loop()
        if (
            self._queue is None
            or self._loop is not loop
            or self._consumer is None
            or self._consumer.done()
        ):
            self._loop = loop
            self._queue = asyncio.Queue()
            self._consumer = loop.create_task(self._consume(self._queue))
            logger.debug("OCR worker started")
        return self._queue

    async def recognize(self, image: np.ndarray) -> PageText:
        """Queue a page and wait for its text.

        Raises:
            ProcessingTimeout: If recognition runs past the limit. Time
                spent waiting behind other pages does not count.
        """
        queue = self._ensure_started()
        future = asyncio.get_running_loop().create_future()
        await queue.put(OCRJob(image=image, future=future))
        return await future

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _run(self, image: np.ndarray) -> PageText:
        if self.preprocessor is not None:
            image = self.preprocessor.process(image)
        return self.engine.recognize(image)

    async def _consume(self, queue: asyncio.Queue[OCRJob]) -> None:
        while True:
            job = await queue.get()
            try:
                if job.future.done():
                    logger.debug("Skipping cancelled OCR job")
                    continue
                await self._serve(job)
            finally:
                queue.task_done()

    async def _serve(self, job: OCRJob) -> None:
        running = asyncio.ensure_future(asyncio.to_thread(self._run, job.image))
        done, _ = await asyncio.wait({running}, timeout=self.timeout_seconds)
        if not done:
            if not job.future.done():
                job.future.set_exception(
                    ProcessingTimeout(f"OCR did not finish within {self.timeout_seconds:.0f}s")
                )
            # The engine is shared; the next job waits for this thread.
            try:
                await running
            except Exception as exc:
                logger.warning("Timed-out OCR job failed: %s", exc)
            return
        try:
            result = running.result()
        except Exception as exc:
            if not job.future.done():
                job.future.set_exception(exc)
        else:
            self.completed += 1
            if not job.future.done():
                job.future.set_result(result)

    async def close(self) -> None:
        """Stop the consumer task."""
        consumer = self._consumer
        if (
            consumer is not None
            and not consumer.done()
            and self._loop is asyncio.get_running_loop()
        ):
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None
        self._queue = None
