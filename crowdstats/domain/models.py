from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crowdstats.domain.base import CamelCaseModel


CUSTOM_SUFFIX = "__c"
RELATIONSHIP_SUFFIX = "__r"


class FieldRole(str, Enum):
    """Closed set of semantic roles the engine knows how to discover."""
    COUNTRY = "country"
    LANGUAGE = "language"
    AGE = "age"
    GENDER = "gender"
    EDUCATION = "education"
    STATUS = "status"
    TYPE = "type"
    SOURCE = "source"
    NAME = "name"
    REFERENCE = "reference"
    KYC_STATUS = "kyc_status"
    APPLICATION_RECEIVED = "application_received"
    APPLIED_DATE = "applied_date"
    ACTIVE_DATE = "active_date"
    TOTAL_APPLIED = "total_applied"
    TOTAL_QUALIFIED = "total_qualified"


class FieldDescriptor(CamelCaseModel):
    """One entry of a remote describe() field catalog."""
    name: str
    type: str = "string"
    reference_to: List[str] = Field(default_factory=list)
    relationship_name: Optional[str] = None
    name_field: bool = False

    @field_validator("reference_to", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []

    @property
    def is_custom(self) -> bool:
        return self.name.endswith(CUSTOM_SUFFIX)

    @property
    def is_reference(self) -> bool:
        return self.type == "reference" or bool(self.reference_to)


class EntityCatalog(CamelCaseModel):
    entity_type: str = Field(alias="name")
    fields: List[FieldDescriptor] = Field(default_factory=list)

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def get(self, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


class ResolvedField(BaseModel):
    """
    A concrete field chosen for a semantic role.

    relationship_name is only set for reference fields and is the name used
    to traverse the relationship server-side.
    """
    model_config = ConfigDict(frozen=True)

    entity_type: str
    role_name: str
    field_name: str
    relationship_name: Optional[str] = None
    target_entity: Optional[str] = None


class QueryPage(BaseModel):
    """One page returned by the remote query API."""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    done: bool = True
    next_cursor: Optional[str] = None
    total_size: Optional[int] = None


@dataclass
class RecordBatch:
    page_number: int
    records: List[Dict[str, Any]]

    def __len__(self) -> int:
        return len(self.records)


StopReason = Literal["exhausted", "deadline", "max_pages", "continuation_error"]


@dataclass
class FetchOutcome:
    """Bookkeeping for one paginated fetch, filled in as the stream is consumed."""
    pages: int = 0
    records: int = 0
    stop_reason: Optional[StopReason] = None
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def partial(self) -> bool:
        return self.stop_reason not in (None, "exhausted")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages": self.pages,
            "records": self.records,
            "stop_reason": self.stop_reason,
            "partial": self.partial,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": self.error,
        }


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cache slot; writers replace the whole entry, never mutate it."""
    key: str
    data: Any
    written_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.written_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl

    def is_stale(self, now: float, stale_fraction: float = 0.8) -> bool:
        return self.age(now) > self.ttl * stale_fraction


@dataclass
class CacheHit:
    data: Any
    is_stale: bool
    age: float
    ttl: float


class CacheStats(BaseModel):
    total: int = 0
    fresh: int = 0
    stale: int = 0
    expired: int = 0


class SeriesPoint(CamelCaseModel):
    dimension_key: str
    value: int


class Snapshot(CamelCaseModel):
    date: str
    taken_at: str
    series: List[SeriesPoint] = Field(default_factory=list)

    def value_for(self, dimension_key: str) -> Optional[int]:
        for point in self.series:
            if point.dimension_key == dimension_key:
                return point.value
        return None


class TrendPoint(BaseModel):
    date: str
    count: int


class AggregateRow(BaseModel):
    key: str
    count: int
    percentage: Optional[float] = None


@dataclass
class AggregationResult:
    """Sorted single-dimension output plus the totals it was derived from."""
    rows: List[AggregateRow] = field(default_factory=list)
    total: int = 0
    bucket_count: int = 0

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.model_dump(exclude_none=True) for r in self.rows]
