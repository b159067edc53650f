"""Tests for the shared OCR worker."""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import numpy as np
import pytest

from src.errors import ProcessingTimeout
from src.ocr.ocr_queue import OCRWorker
from src.ocr.tesseract_engine import PageText


class RecordingEngine:
    """Engine that records page order and how many calls overlap."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.seen: list[int] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def recognize(self, page_image: np.ndarray) -> PageText:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
            self.seen.append(int(page_image[0, 0]))
        return PageText(text=f"page {page_image[0, 0]}", confidence=0.9)


class FailingEngine:
    def recognize(self, page_image: np.ndarray) -> PageText:
        raise RuntimeError("tesseract crashed")


def _page(value: int) -> np.ndarray:
    return np.full((4, 4), value, dtype=np.uint8)


class TestOCRWorker:
    """Tests for the OCRWorker class."""

    def test_jobs_run_one_at_a_time_in_order(self) -> None:
        engine = RecordingEngine()

        async def run() -> list[PageText]:
            worker = OCRWorker(engine)
            results = await asyncio.gather(*(worker.recognize(_page(i)) for i in range(5)))
            assert worker.completed == 5
            assert worker.pending == 0
            await worker.close()
            return results

        results = asyncio.run(run())
        assert [r.text for r in results] == [f"page {i}" for i in range(5)]
        assert engine.seen == [0, 1, 2, 3, 4]
        assert engine.max_active == 1

    def test_preprocessor_runs_before_engine(self) -> None:
        engine = RecordingEngine(delay=0)
        preprocessor = MagicMock()
        preprocessor.process.side_effect = lambda image: image + 1

        async def run() -> None:
            worker = OCRWorker(engine, preprocessor=preprocessor)
            await worker.recognize(_page(3))
            await worker.close()

        asyncio.run(run())
        preprocessor.process.assert_called_once()
        assert engine.seen == [4]

    def test_engine_error_reaches_caller(self) -> None:
        async def run() -> None:
            worker = OCRWorker(FailingEngine())
            try:
                await worker.recognize(_page(0))
            finally:
                await worker.close()

        with pytest.raises(RuntimeError, match="crashed"):
            asyncio.run(run())

    def test_timeout(self) -> None:
        async def run() -> None:
            worker = OCRWorker(RecordingEngine(delay=0.3), timeout_seconds=0.05)
            try:
                await worker.recognize(_page(0))
            finally:
                await worker.close()

        with pytest.raises(ProcessingTimeout):
            asyncio.run(run())

    def test_queue_wait_does_not_count_toward_timeout(self) -> None:
        engine = RecordingEngine(delay=0.3)

        async def run() -> list[PageText]:
            worker = OCRWorker(engine, timeout_seconds=0.5)
            try:
                return await asyncio.gather(*(worker.recognize(_page(i)) for i in range(3)))
            finally:
                await worker.close()

        results = asyncio.run(run())
        assert [r.text for r in results] == ["page 0", "page 1", "page 2"]
        assert engine.max_active == 1

    def test_timed_out_page_still_blocks_the_engine(self) -> None:
        engine = RecordingEngine(delay=0.2)

        async def run() -> tuple[BaseException | PageText, ...]:
            worker = OCRWorker(engine, timeout_seconds=0.05)
            try:
                return tuple(
                    await asyncio.gather(
                        worker.recognize(_page(0)),
                        worker.recognize(_page(1)),
                        return_exceptions=True,
                    )
                )
            finally:
                await worker.close()

        results = asyncio.run(run())
        assert all(isinstance(r, ProcessingTimeout) for r in results)
        assert engine.max_active == 1

    def test_cancelled_job_is_skipped(self) -> None:
        engine = RecordingEngine(delay=0.1)

        async def run() -> None:
            worker = OCRWorker(engine)
            first = asyncio.create_task(worker.recognize(_page(0)))
            second = asyncio.create_task(worker.recognize(_page(1)))
            third = asyncio.create_task(worker.recognize(_page(2)))
            await asyncio.sleep(0.03)
            second.cancel()

            assert (await first).text == "page 0"
            assert (await third).text == "page 2"
            with pytest.raises(asyncio.CancelledError):
                await second
            await worker.close()

        asyncio.run(run())
        assert engine.seen == [0, 2]

    def test_worker_restarts_on_new_loop(self) -> None:
        engine = RecordingEngine(delay=0)
        worker = OCRWorker(engine)

        async def run(value: int) -> str:
            return (await worker.recognize(_page(value))).text

        assert asyncio.run(run(1)) == "page 1"
        assert asyncio.run(run(2)) == "page 2"
