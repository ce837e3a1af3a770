from .models import (
    FieldRole,
    FieldDescriptor,
    EntityCatalog,
    ResolvedField,
    QueryPage,
    RecordBatch,
    FetchOutcome,
    CacheEntry,
    CacheHit,
    CacheStats,
    SeriesPoint,
    Snapshot,
    TrendPoint,
    AggregateRow,
    AggregationResult,
)

__all__ = [
    "FieldRole",
    "FieldDescriptor",
    "EntityCatalog",
    "ResolvedField",
    "QueryPage",
    "RecordBatch",
    "FetchOutcome",
    "CacheEntry",
    "CacheHit",
    "CacheStats",
    "SeriesPoint",
    "Snapshot",
    "TrendPoint",
    "AggregateRow",
    "AggregationResult",
]
