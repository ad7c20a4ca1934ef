"""
Data schemas for the transaction import pipeline
"""
import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class MatchType(str, Enum):
    """Pipeline stage that resolved the entity"""
    ALIAS = "alias"
    EXACT = "exact"
    PREFIX = "prefix"
    CONTAINS = "contains"
    AI = "ai"
    NONE = "none"


class TransactionStatus(str, Enum):
    """Review bucket for a processed row"""
    MATCHED = "matched"
    UNCERTAIN = "uncertain"
    FAILED = "failed"
    SKIPPED = "skipped"


class TransactionType(str, Enum):
    """User-set type; absent means purchase"""
    PURCHASE = "purchase"
    TRANSFER = "transfer"
    INCOME = "income"


class ParsedTransaction(BaseModel):
    """
    Transaction as produced by a bank transformer.

    raw_row is the verbatim source row serialized as text (audit trail);
    checksum is the SHA-256 of raw_row (deduplication key).
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "date": "2025-02-14",
                "description": "WOOLWORTHS 1234 SYDNEY",
                "amount": "-42.15",
                "account": "Amex",
                "raw_row": '{"Date":"14/02/2025","Description":"WOOLWORTHS 1234 SYDNEY","Amount":"42.15"}',
                "checksum": "9f2c...",
            }
        },
    )

    date: datetime.date
    description: str = Field(..., min_length=1)
    amount: Decimal
    account: str = Field(..., min_length=1)
    location: Optional[str] = None
    online: Optional[bool] = None
    raw_row: str
    checksum: str = Field(..., min_length=1)


class EntityMatch(BaseModel):
    """Entity resolution result (matcher or AI)"""
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    entity_url: Optional[str] = None
    match_type: MatchType = MatchType.NONE
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class ProcessedTransaction(ParsedTransaction):
    """Transaction after dedup, matching and categorization"""
    entity: EntityMatch
    status: TransactionStatus
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    transaction_type: Optional[TransactionType] = None


class ConfirmedTransaction(ParsedTransaction):
    """
    Row reviewed by the user and ready to be written.

    Entity fields are omitted for transfers and income.
    """
    transaction_type: Optional[TransactionType] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    entity_url: Optional[str] = None


class ImportWarningType(str, Enum):
    AI_CATEGORIZATION_UNAVAILABLE = "AI_CATEGORIZATION_UNAVAILABLE"
    AI_API_ERROR = "AI_API_ERROR"


class ImportWarning(BaseModel):
    """Non-fatal issue raised while processing a batch"""
    type: ImportWarningType
    message: str
    affected_count: Optional[int] = None
    details: Optional[str] = None


class AiUsageStats(BaseModel):
    """AI usage aggregated over one import batch"""
    api_calls: int = 0
    cache_hits: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost_usd: Decimal = Decimal("0")
    avg_cost_per_call: Decimal = Decimal("0")


class ProcessImportOutput(BaseModel):
    matched: List[ProcessedTransaction] = Field(default_factory=list)
    uncertain: List[ProcessedTransaction] = Field(default_factory=list)
    failed: List[ProcessedTransaction] = Field(default_factory=list)
    skipped: List[ProcessedTransaction] = Field(default_factory=list)
    warnings: List[ImportWarning] = Field(default_factory=list)
    ai_usage: Optional[AiUsageStats] = None


class ImportResult(BaseModel):
    """Outcome of writing one confirmed row"""
    transaction: ConfirmedTransaction
    success: bool
    error: Optional[str] = None
    notion_page_id: Optional[str] = None


class ExecuteImportOutput(BaseModel):
    imported: int
    failed: List[ImportResult] = Field(default_factory=list)
    skipped: int = 0


class ProcessImportRequest(BaseModel):
    transactions: List[ParsedTransaction]
    account: str = Field(..., min_length=1)


class ExecuteImportRequest(BaseModel):
    transactions: List[ConfirmedTransaction]


class CreateEntityRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class CreateEntityOutput(BaseModel):
    entity_id: str
    entity_name: str
    entity_url: str


class SessionStartedResponse(BaseModel):
    session_id: str


# ---- Progress ---------------------------------------------------------------


class SessionStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportStep(str, Enum):
    DEDUPLICATING = "deduplicating"
    MATCHING = "matching"
    CATEGORIZING = "categorizing"
    WRITING = "writing"
    DONE = "done"


class BatchItemStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class BatchItem(BaseModel):
    """One of the most recently touched rows, for the live progress view"""
    description: str
    status: BatchItemStatus = BatchItemStatus.PROCESSING
    error: Optional[str] = None


class ImportSession(BaseModel):
    """Lifecycle state of one import session, as seen by polling clients"""
    session_id: str
    status: SessionStatus = SessionStatus.PROCESSING
    current_step: ImportStep
    total_transactions: int
    processed_count: int = 0
    current_batch: List[BatchItem] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    started_at: datetime.datetime
    completed_at: Optional[datetime.datetime] = None
    result: Optional[Union[ProcessImportOutput, ExecuteImportOutput]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.PROCESSING
