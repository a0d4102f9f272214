import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

MetadataValue = Union[bool, int, float, str, None]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class SourceKind(str, Enum):
    INFO = "info"
    STRATEGY = "strategy"


class Category(str, Enum):
    """Label returned by the classification call.

    Values:
        RELEVANT: Content worth distilling (market news, company moves,
            strategies, events that may move prices). Only this category
            travels downstream.
        ENTERTAINMENT: Jokes, memes, casual chat.
        SPAM: Promotion, scams, meaningless repetition.
        OTHER: Anything else (general news, lifestyle).
    """
    RELEVANT = "relevant"
    ENTERTAINMENT = "entertainment"
    SPAM = "spam"
    OTHER = "other"


class Relationship(str, Enum):
    """How new content relates to the best stored match."""
    IDENTICAL = "identical"
    NEW_CONTAINS_EXISTING = "new_contains_existing"
    EXISTING_CONTAINS_NEW = "existing_contains_new"
    UNRELATED = "unrelated"
    PARTIAL_OVERLAP = "partial_overlap"


class DedupAction(str, Enum):
    NEW = "new"
    UPDATE = "update"
    PROCESSED = "processed"


class EventKind(str, Enum):
    RECORD_RECEIVED = "record.received"
    RECORD_CLASSIFIED = "record.classified"
    RECORD_DEDUPLICATED = "record.deduplicated"
    SIGNAL_GENERATED = "signal.generated"


# -------------------------------------------------------------------------
# Pipeline records
# -------------------------------------------------------------------------
class SourceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    entity_id: str
    entity_name: str
    kind: SourceKind = SourceKind.INFO
    content: str
    metadata: Optional[Dict[str, MetadataValue]] = None
    created_at: UtcDatetime


class ClassifiedRecord(SourceRecord):
    category: Category
    classification_reason: str = ""
    classified_at: datetime = Field(default_factory=utc_now)


class DedupMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: DedupAction
    relationship: Optional[Relationship] = None
    similarity_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    matched_record_id: Optional[str] = None
    is_time_effective: Optional[bool] = None


class DeduplicatedRecord(ClassifiedRecord):
    final_content: str
    processed_content: Optional[str] = None
    dedup_metadata: DedupMetadata
    deduplicated_at: datetime = Field(default_factory=utc_now)


class SignalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    entity_id: str
    entity_name: str
    kind: SourceKind = SourceKind.INFO
    signal_text: str
    model: str
    source_content: str
    created_at: UtcDatetime
    generated_at: datetime = Field(default_factory=utc_now)


class PipelineEvent(BaseModel):
    """Envelope moved between stage queues and handed to downstream consumers."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: EventKind
    payload: Any
    flow_id: Optional[str] = None

    @property
    def record_id(self) -> str:
        return getattr(self.payload, "record_id", "")

    @property
    def created_at(self) -> datetime:
        return getattr(self.payload, "created_at", None) or datetime.min.replace(tzinfo=timezone.utc)


# -------------------------------------------------------------------------
# Judgment capability results
# -------------------------------------------------------------------------
class Classification(BaseModel):
    category: Category
    reason: str = Field(default="", max_length=1000)


class RelationshipJudgment(BaseModel):
    relationship: Relationship
    should_skip: bool
    processed_content: Optional[str] = None
    is_time_effective: bool = False
    should_update: bool = False
    reasoning: str = ""


class ExternalCallSummary(BaseModel):
    prompt_digest: str
    response_digest: str
    model: str
    tokens: Optional[int] = None


# -------------------------------------------------------------------------
# Storage
# -------------------------------------------------------------------------
class SimilarityEntry(BaseModel):
    id: str
    partition: str
    type: str = "info"
    embedding: List[float]
    dimensions: int
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class SubscriptionCursor(BaseModel):
    entity_id: str
    last_timestamp: Optional[UtcDatetime] = None
    total_records_seen: int = 0
    last_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


# -------------------------------------------------------------------------
# Execution tracking
# -------------------------------------------------------------------------
class FlowExecutionRecord(BaseModel):
    controller_id: str = ""
    controller_name: str
    flow_id: str
    batch_number: int = 0
    input_record_ids: List[str] = Field(default_factory=list)
    output_record_ids: List[str] = Field(default_factory=list)
    external_calls: List[ExternalCallSummary] = Field(default_factory=list)
    internal_state: Dict[str, int] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    processing_time_ms: int = 0
    timestamp: int = Field(default_factory=now_ms)


class FlowSummary(BaseModel):
    controller_name: str
    flow_id: str
    total_batches: int = 0
    total_input_events: int = 0
    total_output_events: int = 0
    total_processing_time_ms: int = 0
    first_batch_time: int
    last_batch_time: int


class ControllerFlowExecution(FlowSummary):
    batches: List[FlowExecutionRecord] = Field(default_factory=list)


class FlowData(BaseModel):
    flow_id: str
    input_record_ids: List[str] = Field(default_factory=list)
    output_record_ids: List[str] = Field(default_factory=list)
    controllers: List[str] = Field(default_factory=list)
    start_time: int = Field(default_factory=now_ms)
    end_time: Optional[int] = None
    status: str = "processing"


# -------------------------------------------------------------------------
# Upstream wire shapes
# -------------------------------------------------------------------------
class EntityInfo(BaseModel):
    entity_id: str = Field(alias="entityId")
    data_type: SourceKind = Field(default=SourceKind.INFO, alias="dataType")
    count: int = 0
    display_name: str = Field(default="", alias="displayName")
    description: str = ""
    status: str = "active"
    last_active_at: Optional[datetime] = Field(default=None, alias="lastActiveAt")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def name(self) -> str:
        return self.display_name or self.entity_id


class DataRecord(BaseModel):
    id: str
    entity_id: str = Field(alias="entityId")
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None
    version: str = ""
    hash: Optional[str] = None
    created_at: UtcDatetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def content(self) -> str:
        return str(self.data.get("content", ""))

    def to_source_record(self, entity: EntityInfo) -> SourceRecord:
        return SourceRecord(
            record_id=self.id,
            entity_id=self.entity_id,
            entity_name=entity.name,
            kind=entity.data_type,
            content=self.content,
            metadata=flatten_metadata(self.metadata),
            created_at=self.created_at,
        )


def flatten_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, MetadataValue]]:
    """Keeps scalar values and renders anything nested (tags, objects) as text."""
    if metadata is None:
        return None
    out: Dict[str, MetadataValue] = {}
    for key, value in metadata.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            out[key] = value
        elif isinstance(value, (list, tuple)):
            out[key] = ", ".join(str(v) for v in value)
        else:
            out[key] = str(value)
    return out
