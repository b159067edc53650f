"""Pydantic request/response schemas for the FastAPI endpoints."""

from pydantic import BaseModel, ConfigDict, Field


class TransactionResponse(BaseModel):
    """Response schema for one extracted transaction."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    date: str
    amount: str
    type: str
    description: str
    category: str | None = None
    subcategory: str | None = None
    confidence: float
    detected_source: str = Field(alias="detectedSource")
    source_confidence: float = Field(alias="sourceConfidence")
    merchant: str | None = None
    needs_review: bool = Field(default=False, alias="needsReview")


class DetectionResponse(BaseModel):
    """How the issuing source was determined."""

    source: str
    confidence: float
    method: str


class ProcessResponse(BaseModel):
    """Response schema for a statement processing request."""

    success: bool
    document_id: str
    text_method: str
    text_confidence: float
    page_count: int
    from_cache: bool
    detection: DetectionResponse
    transactions: list[TransactionResponse]
    processing_time_ms: float


class CorrectionRequest(BaseModel):
    """Corrected fields of a transaction."""

    category: str | None = None
    subcategory: str | None = None
    description: str | None = None
    date: str | None = None
    amount: str | None = None
    source: str | None = None
    not_transaction: bool = False


class FeedbackRequest(BaseModel):
    """Request schema for submitting a correction."""

    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(alias="transactionId", min_length=1)
    corrections: CorrectionRequest


class FeedbackAccepted(BaseModel):
    """Response schema for a queued correction."""

    accepted: bool
    transaction_id: str


class StageTimingResponse(BaseModel):
    count: int
    avg_duration_ms: float = Field(alias="avgDurationMs")
    avg_confidence: float = Field(alias="avgConfidence")


class StatsResponse(BaseModel):
    """Response schema for the learning statistics endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    per_source_accuracy: dict[str, float] = Field(alias="perSourceAccuracy")
    merchant_count: int = Field(alias="merchantCount")
    feedback_count: int = Field(alias="feedbackCount")
    pattern_count: int = Field(alias="patternCount")
    stage_timings: dict[str, StageTimingResponse] = Field(alias="stageTimings")


class CleanupResponse(BaseModel):
    """Rows removed per collection by a cleanup run."""

    removed: dict[str, int]


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    tesseract_available: bool
    ocr_engine: str
