"""
Aggregation Engine - folds record batches into count buckets.

Buckets are keyed by a tuple of dimension values. With an identity
extractor configured, each bucket is a set of entity ids and its count is
the set size taken after folding; otherwise buckets are plain counters.
Nothing here holds the records themselves, only the buckets.

DurationAggregator and FieldSums fold the same streams into a mean day gap
and running numeric totals.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import (
    Any,
    AsyncIterable,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from crowdstats.domain import AggregateRow, AggregationResult

UNKNOWN = "Unknown"

AGE_BRACKETS: Tuple[str, ...] = ("0-18", "19-25", "26-35", "36-45", "46-55", "56-65", "66+")
_AGE_UPPER_BOUNDS = ((18, "0-18"), (25, "19-25"), (35, "26-35"), (45, "36-45"), (55, "46-55"), (65, "56-65"))

Record = Dict[str, Any]
BucketKey = Tuple[str, ...]


def normalize_value(value: Any) -> Optional[str]:
    """Stringify and trim; empty values become None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value).strip()
    return text or None


def age_bracket(value: Any) -> Optional[str]:
    """Bucket an age value; non-numeric ages return None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        age = int(float(str(value).strip()))
    except (TypeError, ValueError):
        return None
    for upper, label in _AGE_UPPER_BOUNDS:
        if age <= upper:
            return label
    return "66+"


def field_getter(path: str) -> Callable[[Record], Any]:
    """
    Extractor for a plain or dotted field path ("Contact__r.MailingCountry").
    The final segment falls back to a case-insensitive match.
    """
    parts = path.split(".")

    def _get(record: Record) -> Any:
        current: Any = record
        for i, part in enumerate(parts):
            if not isinstance(current, dict):
                return None
            if part in current:
                current = current[part]
            elif i == len(parts) - 1:
                lowered = part.lower()
                current = next(
                    (v for k, v in current.items() if k.lower() == lowered), None
                )
            else:
                return None
        return current

    return _get


@dataclass(frozen=True)
class Dimension:
    """
    One aggregation axis.

    transform maps a raw value to a bucket label (None means missing).
    Missing values land in `unknown`, or drop the record when skip_missing
    is set. `order` fixes the label order and zero-fills absent labels.
    """
    name: str
    extract: Callable[[Record], Any]
    transform: Callable[[Any], Optional[str]] = normalize_value
    unknown: str = UNKNOWN
    skip_missing: bool = False
    order: Optional[Sequence[str]] = None

    def value(self, record: Record) -> Optional[str]:
        label = self.transform(self.extract(record))
        if label is None:
            return None if self.skip_missing else self.unknown
        return label

    @classmethod
    def for_field(cls, name: str, path: str, **kwargs) -> "Dimension":
        return cls(name=name, extract=field_getter(path), **kwargs)

    @classmethod
    def age(cls, name: str, path: str) -> "Dimension":
        return cls(
            name=name,
            extract=field_getter(path),
            transform=age_bracket,
            skip_missing=True,
            order=AGE_BRACKETS,
        )


@dataclass(frozen=True)
class DimensionSpec:
    dimensions: Tuple[Dimension, ...]
    identity: Optional[Callable[[Record], Hashable]] = None

    @property
    def unique(self) -> bool:
        return self.identity is not None

    @property
    def names(self) -> List[str]:
        return [d.name for d in self.dimensions]


def percentage(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, 1)


class Aggregator:
    """Accumulates buckets for one DimensionSpec."""

    def __init__(self, spec: DimensionSpec):
        if not spec.dimensions:
            raise ValueError("DimensionSpec needs at least one dimension")
        self.spec = spec
        self._sets: Dict[BucketKey, set] = defaultdict(set)
        self._counts: Counter = Counter()
        self.records_seen = 0
        self.records_skipped = 0

    def add(self, record: Record):
        self.records_seen += 1
        key = []
        for dimension in self.spec.dimensions:
            value = dimension.value(record)
            if value is None:
                self.records_skipped += 1
                return
            key.append(value)
        bucket_key = tuple(key)

        if self.spec.identity is None:
            self._counts[bucket_key] += 1
            return
        identity = self.spec.identity(record)
        if identity is None:
            self.records_skipped += 1
            return
        self._sets[bucket_key].add(identity)

    def add_all(self, records: Iterable[Record]):
        for record in records:
            self.add(record)

    def bucket_counts(self) -> Dict[BucketKey, int]:
        if self.spec.unique:
            return {k: len(v) for k, v in self._sets.items()}
        return dict(self._counts)

    def total(self) -> int:
        return sum(self.bucket_counts().values())

    def unique_total(self) -> int:
        """Distinct identities across all buckets (unique mode only)."""
        if not self.spec.unique:
            return self.total()
        seen = set()
        for ids in self._sets.values():
            seen.update(ids)
        return len(seen)

    def sorted_buckets(self) -> List[Tuple[BucketKey, int]]:
        """Count descending, ties broken by key ascending."""
        return sorted(self.bucket_counts().items(), key=lambda item: (-item[1], item[0]))

    def result(
        self,
        limit: Optional[int] = None,
        with_percentages: bool = True,
    ) -> AggregationResult:
        """Single-dimension result rows."""
        dimension = self.spec.dimensions[0]
        fixed = dimension.order is not None and len(self.spec.dimensions) == 1
        counts = self.bucket_counts()
        if fixed:
            for label in dimension.order:
                counts.setdefault((label,), 0)
            items = sorted(
                counts.items(),
                key=lambda item: (
                    dimension.order.index(item[0][0]) if item[0][0] in dimension.order
                    else len(dimension.order),
                    item[0],
                ),
            )
        else:
            items = sorted(counts.items(), key=lambda item: (-item[1], item[0]))

        total = sum(counts.values())
        rows = [
            AggregateRow(
                key=" / ".join(key),
                count=count,
                percentage=percentage(count, total) if with_percentages else None,
            )
            for key, count in items
        ]
        if limit is not None:
            rows = rows[:limit]
        return AggregationResult(rows=rows, total=total, bucket_count=len(counts))

    def pairs(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Flat multi-dimension rows: {dimA: ..., dimB: ..., count: n}."""
        names = self.spec.names
        rows = []
        for key, count in self.sorted_buckets():
            row: Dict[str, Any] = dict(zip(names, key))
            row["count"] = count
            rows.append(row)
        return rows[:limit] if limit is not None else rows

    def cross_tab(self, row_dim: int = 0, col_dim: int = 1) -> "CrossTab":
        """Two-dimension matrix bucket[rowKey][colKey]."""
        if len(self.spec.dimensions) < 2:
            raise ValueError("Cross-tabulation needs two dimensions")
        matrix: Dict[str, Dict[str, int]] = defaultdict(dict)
        for key, count in self.bucket_counts().items():
            cell = matrix[key[row_dim]]
            cell[key[col_dim]] = cell.get(key[col_dim], 0) + count
        return CrossTab(
            row_dimension=self.spec.dimensions[row_dim],
            col_dimension=self.spec.dimensions[col_dim],
            matrix=dict(matrix),
        )


@dataclass
class CrossTab:
    row_dimension: Dimension
    col_dimension: Dimension
    matrix: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def columns(self) -> List[str]:
        seen = {c for cells in self.matrix.values() for c in cells}
        order = self.col_dimension.order
        if order:
            return list(order) + sorted(c for c in seen if c not in order)
        return sorted(seen)

    def row_total(self, row_key: str) -> int:
        return sum(self.matrix.get(row_key, {}).values())

    def rows(self) -> List[Dict[str, Any]]:
        """[{rowKey, col1: n, col2: n, ...}] with every column zero-filled."""
        columns = self.columns()
        order = self.row_dimension.order
        if order:
            keys = sorted(
                self.matrix,
                key=lambda k: (order.index(k) if k in order else len(order), k),
            )
        else:
            keys = sorted(self.matrix, key=lambda k: (-self.row_total(k), k))
        out = []
        for key in keys:
            cells = self.matrix[key]
            row: Dict[str, Any] = {"rowKey": key}
            for column in columns:
                row[column] = cells.get(column, 0)
            out.append(row)
        return out


def parse_day(value: Any) -> Optional[date]:
    """Calendar day of a date or datetime value ("2026-01-05T08:00:00.000+0000")."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = normalize_value(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


class DurationAggregator:
    """
    Mean whole-day gap between two date fields of the same record.

    Records with a missing or unparseable date, or an end before the
    start, are counted in `skipped` and left out of the mean.
    """

    def __init__(self, start_path: str, end_path: str):
        self._start = field_getter(start_path)
        self._end = field_getter(end_path)
        self.total_days = 0
        self.samples = 0
        self.skipped = 0

    def add(self, record: Record):
        start = parse_day(self._start(record))
        end = parse_day(self._end(record))
        if start is None or end is None or end < start:
            self.skipped += 1
            return
        self.total_days += (end - start).days
        self.samples += 1

    def add_all(self, records: Iterable[Record]):
        for record in records:
            self.add(record)

    def mean_days(self) -> float:
        if not self.samples:
            return 0.0
        return round(self.total_days / self.samples, 1)


class FieldSums:
    """Running numeric totals per field; values that do not parse as numbers add nothing."""

    def __init__(self, paths: Dict[str, str]):
        self._getters = {name: field_getter(path) for name, path in paths.items()}
        self._totals: Dict[str, float] = {name: 0.0 for name in paths}

    def add(self, record: Record):
        for name, getter in self._getters.items():
            value = getter(record)
            if value is None or isinstance(value, bool):
                continue
            try:
                self._totals[name] += float(str(value).strip())
            except ValueError:
                continue

    def add_all(self, records: Iterable[Record]):
        for record in records:
            self.add(record)

    def totals(self) -> Dict[str, int]:
        return {name: int(round(total)) for name, total in self._totals.items()}


def fold_records(records: Iterable[Record], spec: DimensionSpec) -> Aggregator:
    aggregator = Aggregator(spec)
    aggregator.add_all(records)
    return aggregator


async def fold(batches: AsyncIterable[Any], spec: DimensionSpec) -> Aggregator:
    """
    Consume a batch stream into a new Aggregator.

    Accepts RecordBatch objects or plain lists of records.
    """
    aggregator = Aggregator(spec)
    async for batch in batches:
        records = getattr(batch, "records", batch)
        aggregator.add_all(records)
    return aggregator
