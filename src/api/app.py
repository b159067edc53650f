"""FastAPI application for the statement processing API.

Provides REST endpoints for statement processing, correction feedback,
learning statistics, store maintenance, and health checks.
"""

import shutil
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from src.errors import DocumentUnreadable, ProcessingCancelled, ProcessingTimeout
from src.pipeline import Document, StatementPipeline
from src.utils.config import load_config
from src.utils.logger import get_logger

from .schemas import (
    CleanupResponse,
    DetectionResponse,
    FeedbackAccepted,
    FeedbackRequest,
    HealthResponse,
    ProcessResponse,
    StatsResponse,
    TransactionResponse,
)

logger = get_logger(__name__)

API_VERSION = "1.0.0"


def get_pipeline(request: Request) -> StatementPipeline:
    """Shared pipeline, built from ``configs/config.yaml`` on first use."""
    pipeline = request.app.state.pipeline
    if pipeline is None:
        pipeline = StatementPipeline(load_config())
        request.app.state.pipeline = pipeline
    return pipeline


PipelineDep = Annotated[StatementPipeline, Depends(get_pipeline)]


def create_app(pipeline: StatementPipeline | None = None) -> FastAPI:
    """Build the API around a pipeline.

    Args:
        pipeline: Pipeline to serve; created lazily from the config file
            when omitted.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.pipeline is not None:
            await app.state.pipeline.close()

    application = FastAPI(
        title="Statement Intelligence API",
        description="Extract, classify and learn from financial statement transactions",
        version=API_VERSION,
        lifespan=lifespan,
    )
    application.state.pipeline = pipeline

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.get("/health", response_model=HealthResponse)
    async def health_check(pipeline: PipelineDep) -> HealthResponse:
        """Return system health status."""
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            tesseract_available=shutil.which("tesseract") is not None,
            ocr_engine=type(pipeline.ocr_worker.engine).__name__,
        )

    @application.post("/process", response_model=ProcessResponse)
    async def process_statement(
        file: Annotated[UploadFile, File(...)],
        pipeline: PipelineDep,
        hint: Annotated[str | None, Query()] = None,
    ) -> ProcessResponse:
        """Extract and classify the transactions of an uploaded statement.

        Args:
            file: Uploaded statement (PDF, image, or plain text).
            pipeline: Shared statement pipeline.
            hint: Optional source id that skips detection.

        Returns:
            Detected source and enriched transactions.
        """
        content = await file.read()
        mime_type = file.content_type
        if mime_type in (None, "application/octet-stream"):
            mime_type = None

        try:
            result = await pipeline.process_document(
                Document(content=content, mime_type=mime_type, filename=file.filename),
                hint=hint,
            )
        except DocumentUnreadable as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ProcessingTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc)) from exc
        except ProcessingCancelled as exc:
            raise HTTPException(status_code=499, detail=str(exc)) from exc
        except Exception as exc:
            logger.error("Processing %s failed: %s", file.filename, exc, exc_info=True)
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        return ProcessResponse(
            success=True,
            document_id=result.document.content_hash,
            text_method=result.document.method,
            text_confidence=result.document.confidence,
            page_count=result.document.page_count,
            from_cache=result.document.from_cache,
            detection=DetectionResponse(
                source=result.detection.source,
                confidence=result.detection.confidence,
                method=result.detection.method,
            ),
            transactions=[TransactionResponse(**t.to_dict()) for t in result.transactions],
            processing_time_ms=result.processing_time_ms,
        )

    @application.post("/feedback", response_model=FeedbackAccepted, status_code=202)
    async def submit_feedback(
        feedback: FeedbackRequest,
        background_tasks: BackgroundTasks,
        pipeline: PipelineDep,
    ) -> FeedbackAccepted:
        """Queue a correction; learning happens after the response is sent."""
        corrections = feedback.corrections.model_dump(exclude_none=True)
        background_tasks.add_task(pipeline.apply_feedback, feedback.transaction_id, corrections)
        return FeedbackAccepted(accepted=True, transaction_id=feedback.transaction_id)

    @application.get("/stats", response_model=StatsResponse, response_model_by_alias=True)
    async def get_stats(pipeline: PipelineDep) -> StatsResponse:
        """Return learning statistics."""
        return StatsResponse(**pipeline.get_stats())

    @application.post("/maintenance/cleanup", response_model=CleanupResponse)
    async def cleanup(pipeline: PipelineDep) -> CleanupResponse:
        """Apply retention rules to the learning store."""
        return CleanupResponse(removed=pipeline.cleanup())

    return application


app = create_app()
