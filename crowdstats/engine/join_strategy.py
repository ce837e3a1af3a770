"""
Two-Tier Join Strategy - resolves fields that live on a referenced entity.

Tier 1: one paginated query on the source entity asking the remote API to
        traverse the relationship ("Contact__r.MailingCountry").
Tier 2: used when Tier 1 is rejected. Streams the source entity collecting
        distinct foreign keys, then looks targets up by id in fixed-size
        batches, dispatched in waves of bounded parallelism, and joins the
        results back in memory.

Both tiers emit JoinedRow objects. Tier 1 emits one row per source record;
Tier 2 emits one row per distinct (foreign key, carried value) pair, with
`source` rebuilt from those two fields. Aggregations over unique
identities therefore produce identical buckets from either tier.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from crowdstats.core.constants import LOOKUP_BATCH_SIZE, LOOKUP_PARALLELISM, MAX_PAGES
from crowdstats.domain import FetchOutcome, ResolvedField
from crowdstats.engine.aggregation import field_getter
from crowdstats.engine.fetcher import BatchStream, Deadline
from crowdstats.remote.errors import RemoteQueryRejected
from crowdstats.remote.query import RecordQuery, in_clause
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)

TIER_RELATIONSHIP = "relationship"
TIER_LOOKUP = "lookup"


@dataclass
class JoinRequest:
    """
    source_query selects the source entity rows (filters included).
    reference is the resolved reference field from source to target entity.
    carry_field is an optional source field kept alongside each key, e.g.
    the person id when the join target is the project.
    """
    source_query: RecordQuery
    reference: ResolvedField
    target_fields: List[str]
    carry_field: Optional[str] = None

    @property
    def target_entity(self) -> str:
        if not self.reference.target_entity:
            raise ValueError(f"Reference {self.reference.field_name} has no target entity")
        return self.reference.target_entity


@dataclass
class JoinedRow:
    key: str
    values: Dict[str, Any]
    source: Dict[str, Any]
    carried: Optional[Any] = None

    @property
    def identity(self) -> Any:
        return self.carried if self.carried is not None else self.key


@dataclass
class JoinReport:
    """
    failed_batches counts lookups that errored, on the first page or a
    continuation. skipped_batches counts lookups never sent because the
    deadline passed, plus those cut short by the deadline or page ceiling.
    """
    tier: Optional[str] = None
    source_outcome: FetchOutcome = field(default_factory=FetchOutcome)
    lookup_batches: int = 0
    failed_batches: int = 0
    skipped_batches: int = 0
    rejection: Optional[str] = None

    @property
    def partial(self) -> bool:
        return (
            self.source_outcome.partial
            or self.failed_batches > 0
            or self.skipped_batches > 0
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "source": self.source_outcome.to_dict(),
            "lookup_batches": self.lookup_batches,
            "failed_batches": self.failed_batches,
            "skipped_batches": self.skipped_batches,
            "rejection": self.rejection,
            "partial": self.partial,
        }


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class TwoTierJoin:
    """Runs one JoinRequest, relationship traversal first, id lookups on rejection."""

    def __init__(
        self,
        source,
        deadline: Deadline,
        max_pages: int = MAX_PAGES,
        batch_size: int = LOOKUP_BATCH_SIZE,
        parallelism: int = LOOKUP_PARALLELISM,
    ):
        if batch_size < 1 or parallelism < 1:
            raise ValueError("batch_size and parallelism must be positive")
        self._source = source
        self._deadline = deadline
        self._max_pages = max_pages
        self._batch_size = batch_size
        self._parallelism = parallelism
        self.report = JoinReport()

    async def stream(self, request: JoinRequest) -> AsyncIterator[List[JoinedRow]]:
        """Yield lists of joined rows; tier choice is recorded on self.report."""
        self.report = JoinReport()
        try:
            async for rows in self._relationship_tier(request):
                yield rows
            return
        except RemoteQueryRejected as e:
            logger.warning(
                f"[TwoTierJoin] Relationship traversal {request.reference.relationship_name} "
                f"rejected ({e.error_code or e}); falling back to id lookups"
            )
            self.report.rejection = str(e)

        async for rows in self._lookup_tier(request):
            yield rows

    # ------------------------------------------------------------------
    # Tier 1
    # ------------------------------------------------------------------

    def relationship_query(self, request: JoinRequest) -> RecordQuery:
        ref = request.reference
        traversed = [f"{ref.relationship_name}.{f}" for f in request.target_fields]
        extra = [ref.field_name] + ([request.carry_field] if request.carry_field else [])
        return request.source_query.with_fields(*extra, *traversed).with_where(
            f"{ref.field_name} != null"
        )

    async def _relationship_tier(self, request: JoinRequest) -> AsyncIterator[List[JoinedRow]]:
        ref = request.reference
        stream = BatchStream(
            self._source,
            self.relationship_query(request),
            self._deadline,
            max_pages=self._max_pages,
            label=f"{request.source_query.entity}->{ref.relationship_name}",
        )
        getters = {f: field_getter(f"{ref.relationship_name}.{f}") for f in request.target_fields}
        self.report.tier = TIER_RELATIONSHIP
        async for batch in stream:
            rows = []
            for record in batch.records:
                key = record.get(ref.field_name)
                if not key or not isinstance(record.get(ref.relationship_name), dict):
                    continue
                carried = record.get(request.carry_field) if request.carry_field else None
                if request.carry_field and carried is None:
                    continue
                rows.append(JoinedRow(
                    key=key,
                    values={f: getter(record) for f, getter in getters.items()},
                    source=record,
                    carried=carried,
                ))
            self.report.source_outcome = stream.outcome
            if rows:
                yield rows
        self.report.source_outcome = stream.outcome

    # ------------------------------------------------------------------
    # Tier 2
    # ------------------------------------------------------------------

    async def collect_keys(self, request: JoinRequest) -> Dict[str, Set[Any]]:
        """Distinct foreign keys, each with the set of carried values seen with it."""
        ref = request.reference
        fields = [ref.field_name] + ([request.carry_field] if request.carry_field else [])
        query = request.source_query.with_fields(*fields).with_where(f"{ref.field_name} != null")
        stream = BatchStream(
            self._source,
            query,
            self._deadline,
            max_pages=self._max_pages,
            label=f"{request.source_query.entity}.{ref.field_name}",
        )
        keys: Dict[str, Set[Any]] = {}
        async for batch in stream:
            for record in batch.records:
                key = record.get(ref.field_name)
                if not key:
                    continue
                carried = keys.setdefault(key, set())
                if request.carry_field:
                    value = record.get(request.carry_field)
                    if value is not None:
                        carried.add(value)
        self.report.source_outcome = stream.outcome
        logger.info(f"[TwoTierJoin] Collected {len(keys)} distinct {ref.field_name} keys")
        return keys

    async def _lookup_batch(
        self, request: JoinRequest, ids: List[str], batch_number: int
    ) -> Tuple[Optional[Dict[str, Dict[str, Any]]], FetchOutcome]:
        """
        Records found for one id batch, keyed by id, with the fetch outcome.

        A batch that cannot be fetched at all returns None. A batch cut short
        returns what it found; its outcome says why it stopped.
        """
        query = RecordQuery(
            entity=request.target_entity,
            fields=["Id"] + [f for f in request.target_fields if f != "Id"],
            where=[in_clause("Id", ids)],
        )
        stream = BatchStream(
            self._source,
            query,
            self._deadline,
            max_pages=self._max_pages,
            label=f"{request.target_entity} lookup #{batch_number}",
        )
        found: Dict[str, Dict[str, Any]] = {}
        try:
            async for batch in stream:
                for record in batch.records:
                    record_id = record.get("Id")
                    if record_id:
                        found[record_id] = record
        except Exception as e:
            logger.error(f"[TwoTierJoin] Lookup batch {batch_number} ({len(ids)} ids) failed: {e}")
            return None, stream.outcome
        return found, stream.outcome

    async def _lookup_tier(self, request: JoinRequest) -> AsyncIterator[List[JoinedRow]]:
        self.report.tier = TIER_LOOKUP
        keys = await self.collect_keys(request)
        if not keys:
            return

        ref = request.reference
        getters = {f: field_getter(f) for f in request.target_fields}
        batches = chunked(sorted(keys), self._batch_size)
        waves = chunked(list(range(len(batches))), self._parallelism)
        logger.info(
            f"[TwoTierJoin] Looking up {len(keys)} {request.target_entity} ids in "
            f"{len(batches)} batches ({len(waves)} waves of <= {self._parallelism})"
        )

        for wave_number, wave in enumerate(waves, start=1):
            if self._deadline.expired:
                skipped = sum(len(w) for w in waves[wave_number - 1:])
                self.report.skipped_batches += skipped
                logger.warning(
                    f"[TwoTierJoin] Deadline exceeded; skipping {skipped} remaining lookup batches"
                )
                break

            results = await asyncio.gather(
                *(self._lookup_batch(request, batches[i], i + 1) for i in wave)
            )
            rows: List[JoinedRow] = []
            for found, outcome in results:
                self.report.lookup_batches += 1
                if found is None or outcome.stop_reason == "continuation_error":
                    self.report.failed_batches += 1
                elif outcome.partial:
                    self.report.skipped_batches += 1
                if not found:
                    continue
                for key, target in found.items():
                    values = {f: getter(target) for f, getter in getters.items()}
                    carried_values = keys.get(key) or set()
                    if request.carry_field:
                        for carried in carried_values:
                            rows.append(JoinedRow(
                                key=key,
                                values=values,
                                source={ref.field_name: key, request.carry_field: carried},
                                carried=carried,
                            ))
                    else:
                        rows.append(JoinedRow(key=key, values=values, source={ref.field_name: key}))
            if rows:
                yield rows


async def resolve_cross_entity_field(
    source,
    request: JoinRequest,
    deadline: Deadline,
    **kwargs,
) -> AsyncIterator[List[JoinedRow]]:
    """Functional entry point; the JoinReport is not returned, use TwoTierJoin for it."""
    join = TwoTierJoin(source, deadline, **kwargs)
    async for rows in join.stream(request):
        yield rows
