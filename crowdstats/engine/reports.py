"""
Report Service - the contributor report catalogue.

Person reports count unique active persons: assignment rows filtered on the
active status, joined to the person entity through the discovered
reference field, folded with the person id as identity. Assignment-level
reports (KYC status, onboarding, application durations, headline totals)
read one entity directly with no join. Results are cached per report key;
the summary report also feeds the snapshot log.
"""

from dataclasses import dataclass, field
from operator import itemgetter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from crowdstats.core.constants import (
    ACTIVE_STATUS,
    ASSIGNMENT_ENTITY,
    ASSIGNMENT_STATUS_FIELD,
    DEFAULT_TREND_DAYS,
    LOOKUP_BATCH_SIZE,
    LOOKUP_PARALLELISM,
    MAX_PAGES,
    PERSON_ENTITY,
    PRODUCTIVE_STATUS,
    PROJECT_ENTITY,
    REPORT_CACHE_TTL,
    REQUEST_DEADLINE_SECONDS,
)
from crowdstats.domain import FetchOutcome, FieldRole, ResolvedField
from crowdstats.engine.aggregation import (
    UNKNOWN,
    Aggregator,
    Dimension,
    DimensionSpec,
    DurationAggregator,
    FieldSums,
    field_getter,
)
from crowdstats.engine.cache import CacheManager
from crowdstats.engine.fetcher import BatchStream, Deadline
from crowdstats.engine.field_discovery import FieldDiscovery
from crowdstats.engine.join_strategy import JoinReport, JoinRequest, TwoTierJoin
from crowdstats.engine.snapshots import SnapshotStore
from crowdstats.remote.errors import FirstPageFailure, RemoteQueryRejected
from crowdstats.remote.query import RecordQuery, in_clause, quote_literal
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)

IDENTITY_FIELD = "_identity"
TOTAL_SERIES = "total_active"

# report name -> (response key, person role)
DIMENSION_REPORTS: Dict[str, Tuple[str, FieldRole]] = {
    "country": ("byCountry", FieldRole.COUNTRY),
    "language": ("byLanguage", FieldRole.LANGUAGE),
    "age": ("byAge", FieldRole.AGE),
    "gender": ("byGender", FieldRole.GENDER),
    "education": ("byEducation", FieldRole.EDUCATION),
    "source": ("bySource", FieldRole.SOURCE),
    "status": ("byStatus", FieldRole.STATUS),
    "type": ("byType", FieldRole.TYPE),
}

# cross-tab name -> (row role, column role)
CROSS_TABS: Dict[str, Tuple[FieldRole, FieldRole]] = {
    "age-by-country": (FieldRole.COUNTRY, FieldRole.AGE),
    "gender-by-country": (FieldRole.COUNTRY, FieldRole.GENDER),
    "education-by-country": (FieldRole.COUNTRY, FieldRole.EDUCATION),
    "age-vs-gender": (FieldRole.AGE, FieldRole.GENDER),
    "education-vs-age": (FieldRole.EDUCATION, FieldRole.AGE),
}

# report name -> (response key, assignment role); counted per unique person, no join
ASSIGNMENT_REPORTS: Dict[str, Tuple[str, FieldRole]] = {
    "kyc-status": ("kycStatus", FieldRole.KYC_STATUS),
}

# report name -> (response key, start date role, end date role), both on the assignment
DURATION_REPORTS: Dict[str, Tuple[str, FieldRole, FieldRole]] = {
    "app-received-to-applied": (
        "avgAppReceivedToApplied", FieldRole.APPLICATION_RECEIVED, FieldRole.APPLIED_DATE,
    ),
    "app-received-to-active": (
        "avgAppReceivedToActive", FieldRole.APPLICATION_RECEIVED, FieldRole.ACTIVE_DATE,
    ),
}

# Constant dimension: one bucket holding every identity.
EVERYONE = Dimension(name="all", extract=lambda r: "all")


def make_dimension(role: FieldRole, field_name: str) -> Dimension:
    if role == FieldRole.AGE:
        return Dimension.age(role.value, field_name)
    return Dimension.for_field(role.value, field_name)


def fetch_warnings(outcome: FetchOutcome) -> List[str]:
    if not outcome.partial:
        return []
    return [
        f"Fetch stopped early ({outcome.stop_reason}) after {outcome.pages} pages; "
        f"counts may be incomplete"
    ]


def join_warnings(report: JoinReport) -> List[str]:
    warnings = fetch_warnings(report.source_outcome)
    if report.failed_batches:
        warnings.append(f"{report.failed_batches} lookup batches failed; counts may be incomplete")
    if report.skipped_batches:
        warnings.append(
            f"{report.skipped_batches} lookup batches skipped or cut short at the deadline; "
            f"counts may be incomplete"
        )
    return warnings


@dataclass
class Computation:
    """Folders fed by one join or query, plus what went wrong on the way."""
    aggregators: List[Any] = field(default_factory=list)
    partial: bool = False
    warnings: List[str] = field(default_factory=list)
    tier: Optional[str] = None

    @property
    def available(self) -> bool:
        return bool(self.aggregators)


class ReportService:
    """
    Builds, caches and snapshots the contributor reports.

    One Deadline is created per report computation and shared by every
    fetch that computation issues.
    """

    def __init__(
        self,
        source,
        cache: Optional[CacheManager] = None,
        snapshots: Optional[SnapshotStore] = None,
        discovery: Optional[FieldDiscovery] = None,
        deadline_seconds: float = REQUEST_DEADLINE_SECONDS,
        max_pages: int = MAX_PAGES,
        batch_size: int = LOOKUP_BATCH_SIZE,
        parallelism: int = LOOKUP_PARALLELISM,
        report_ttl: float = REPORT_CACHE_TTL,
    ):
        self.source = source
        self.cache = cache if cache is not None else CacheManager()
        self.snapshots = snapshots if snapshots is not None else SnapshotStore()
        self.discovery = discovery if discovery is not None else FieldDiscovery(source)
        self.deadline_seconds = deadline_seconds
        self.max_pages = max_pages
        self.batch_size = batch_size
        self.parallelism = parallelism
        self.report_ttl = report_ttl

    # ------------------------------------------------------------------
    # Join + fold
    # ------------------------------------------------------------------

    def active_assignments(self) -> RecordQuery:
        return RecordQuery(
            entity=ASSIGNMENT_ENTITY,
            fields=["Id"],
            where=[f"{ASSIGNMENT_STATUS_FIELD} = {quote_literal(ACTIVE_STATUS)}"],
        )

    async def _fold_join(
        self,
        request: JoinRequest,
        specs: Sequence[DimensionSpec],
    ) -> Computation:
        deadline = Deadline(self.deadline_seconds)
        join = TwoTierJoin(
            self.source,
            deadline,
            max_pages=self.max_pages,
            batch_size=self.batch_size,
            parallelism=self.parallelism,
        )
        aggregators = [Aggregator(spec) for spec in specs]
        computation = Computation(aggregators=aggregators)
        try:
            async for rows in join.stream(request):
                for row in rows:
                    record = dict(row.values)
                    record[IDENTITY_FIELD] = row.identity
                    for aggregator in aggregators:
                        aggregator.add(record)
        except RemoteQueryRejected as e:
            # Both tiers refused the query shape.
            logger.error(f"[ReportService] Join on {request.target_entity} rejected by both tiers: {e}")
            computation.partial = True
            computation.warnings.append(f"Remote source rejected the query: {e}")
            return computation

        computation.tier = join.report.tier
        computation.partial = join.report.partial
        computation.warnings.extend(join_warnings(join.report))
        logger.info(
            f"[ReportService] Folded {request.source_query.entity} -> {request.target_entity} "
            f"via {join.report.tier} in {deadline.elapsed():.2f}s (partial={computation.partial})"
        )
        return computation

    async def _fold_query(
        self,
        query: RecordQuery,
        folders: Sequence[Any],
        deadline: Optional[Deadline] = None,
    ) -> Computation:
        """Feed every page of one query to each folder; no join involved."""
        deadline = deadline if deadline is not None else Deadline(self.deadline_seconds)
        stream = BatchStream(self.source, query, deadline, max_pages=self.max_pages)
        computation = Computation(aggregators=list(folders))
        try:
            async for batch in stream:
                for folder in folders:
                    folder.add_all(batch.records)
        except RemoteQueryRejected as e:
            logger.error(f"[ReportService] Query on {query.entity} rejected: {e}")
            computation.partial = True
            computation.warnings.append(f"Remote source rejected the query: {e}")
            return computation

        computation.partial = stream.outcome.partial
        computation.warnings.extend(fetch_warnings(stream.outcome))
        logger.info(
            f"[ReportService] Folded {stream.outcome.records} {query.entity} records "
            f"in {deadline.elapsed():.2f}s (partial={computation.partial})"
        )
        return computation

    async def _person_reference(self, warnings: List[str]) -> Optional[ResolvedField]:
        reference = await self.discovery.resolve(ASSIGNMENT_ENTITY, FieldRole.REFERENCE, PERSON_ENTITY)
        if reference is None:
            warnings.append(f"No reference from {ASSIGNMENT_ENTITY} to {PERSON_ENTITY} found")
        return reference

    async def _entity_fields(
        self, entity_type: str, roles: Sequence[FieldRole], warnings: List[str]
    ) -> Dict[FieldRole, ResolvedField]:
        resolved = {}
        for role in roles:
            found = await self.discovery.resolve(entity_type, role)
            if found is None:
                warnings.append(f"No {role.value} field found on {entity_type}")
            else:
                resolved[role] = found
        return resolved

    async def _person_fields(
        self, roles: Sequence[FieldRole], warnings: List[str]
    ) -> Dict[FieldRole, ResolvedField]:
        return await self._entity_fields(PERSON_ENTITY, roles, warnings)

    async def compute_person_specs(
        self,
        role_groups: Sequence[Sequence[FieldRole]],
    ) -> Computation:
        """
        Fold one person join into one Aggregator per role group.

        A group whose roles cannot all be resolved is unavailable; the
        computation then carries no aggregators and a warning per role.
        """
        warnings: List[str] = []
        reference = await self._person_reference(warnings)
        roles = list(dict.fromkeys(r for group in role_groups for r in group))
        fields = await self._person_fields(roles, warnings)
        if reference is None or len(fields) < len(roles):
            return Computation(warnings=warnings)

        specs = [
            DimensionSpec(
                dimensions=tuple(make_dimension(r, fields[r].field_name) for r in group),
                identity=itemgetter(IDENTITY_FIELD),
            )
            for group in role_groups
        ]
        request = JoinRequest(
            source_query=self.active_assignments(),
            reference=reference,
            target_fields=["Id"] + [fields[r].field_name for r in roles],
        )
        computation = await self._fold_join(request, specs)
        computation.warnings[:0] = warnings
        return computation

    # ------------------------------------------------------------------
    # Cache wrapper
    # ------------------------------------------------------------------

    async def cached(
        self,
        key: str,
        compute: Callable[[], Awaitable[Dict[str, Any]]],
        refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Serve key from cache unless refresh is set, otherwise compute and store.

        A FirstPageFailure falls back to any cached value (stale or not)
        before propagating.
        """
        previous = self.cache.get(key)
        if previous is not None and not refresh:
            logger.info(
                f"[ReportService] Returning cached {key} "
                f"(age: {previous.age:.0f}s, stale: {previous.is_stale})"
            )
            return self._with_meta(previous.data, cached=True, stale=previous.is_stale, age=previous.age)

        try:
            payload = await compute()
        except FirstPageFailure as e:
            if previous is None:
                raise
            logger.warning(f"[ReportService] {key} failed ({e}); returning cached data")
            response = self._with_meta(previous.data, cached=True, stale=True, age=previous.age)
            response["warnings"] = list(response["warnings"]) + [
                f"Remote source unavailable; returning cached data ({e})"
            ]
            return response

        if payload["partial"] and previous is not None and not previous.data["partial"]:
            payload["warnings"].append("Result is partial; a complete cached result was kept")
        else:
            self.cache.set(key, payload, self.report_ttl)
        return self._with_meta(payload, cached=False, stale=False, age=0.0)

    @staticmethod
    def _with_meta(payload: Dict[str, Any], cached: bool, stale: bool, age: float) -> Dict[str, Any]:
        response = dict(payload)
        response["cached"] = cached
        response["stale"] = stale
        response["ageSeconds"] = round(age)
        return response

    @staticmethod
    def _payload(computation: Computation, **data) -> Dict[str, Any]:
        payload = dict(data)
        payload["partial"] = computation.partial
        payload["warnings"] = list(computation.warnings)
        return payload

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def dimension_report(
        self, name: str, limit: Optional[int] = None, refresh: bool = False
    ) -> Dict[str, Any]:
        if name not in DIMENSION_REPORTS:
            raise KeyError(f"Unknown report '{name}'")
        response_key, role = DIMENSION_REPORTS[name]

        async def compute():
            computation = await self.compute_person_specs([[role]])
            if not computation.available:
                return self._payload(computation, **{response_key: [], "total": 0})
            result = computation.aggregators[0].result(limit=limit)
            return self._payload(computation, **{response_key: result.to_list(), "total": result.total})

        key = self.cache.generate_key("crowd", name, limit if limit is not None else "all")
        return await self.cached(key, compute, refresh)

    async def by_country_language(
        self, limit: Optional[int] = None, refresh: bool = False
    ) -> Dict[str, Any]:
        async def compute():
            computation = await self.compute_person_specs([[FieldRole.COUNTRY, FieldRole.LANGUAGE]])
            if not computation.available:
                return self._payload(computation, byCountryLanguage=[], total=0)
            aggregator = computation.aggregators[0]
            return self._payload(
                computation,
                byCountryLanguage=aggregator.pairs(limit=limit),
                total=aggregator.total(),
            )

        key = self.cache.generate_key("crowd", "country-language", limit if limit is not None else "all")
        return await self.cached(key, compute, refresh)

    async def cross_tab(self, name: str, refresh: bool = False) -> Dict[str, Any]:
        if name not in CROSS_TABS:
            raise KeyError(f"Unknown cross-tab '{name}'")
        row_role, col_role = CROSS_TABS[name]

        async def compute():
            computation = await self.compute_person_specs([[row_role, col_role]])
            if not computation.available:
                return self._payload(computation, rows=[], columns=[])
            table = computation.aggregators[0].cross_tab()
            return self._payload(computation, rows=table.rows(), columns=table.columns())

        key = self.cache.generate_key("crowd", "demographics", name)
        return await self.cached(key, compute, refresh)

    async def by_project(self, limit: Optional[int] = None, refresh: bool = False) -> Dict[str, Any]:
        """Unique active persons per project; the person id rides along as the carried field."""

        async def compute():
            warnings: List[str] = []
            person_ref = await self._person_reference(warnings)
            project_ref = await self.discovery.resolve(
                ASSIGNMENT_ENTITY, FieldRole.REFERENCE, PROJECT_ENTITY
            )
            if project_ref is None:
                warnings.append(f"No reference from {ASSIGNMENT_ENTITY} to {PROJECT_ENTITY} found")
            name_field = await self.discovery.resolve(PROJECT_ENTITY, FieldRole.NAME)
            if name_field is None:
                warnings.append(f"No name field found on {PROJECT_ENTITY}")
            if person_ref is None or project_ref is None or name_field is None:
                return self._payload(Computation(warnings=warnings), byProject=[], total=0)

            spec = DimensionSpec(
                dimensions=(Dimension.for_field("project", name_field.field_name),),
                identity=itemgetter(IDENTITY_FIELD),
            )
            request = JoinRequest(
                source_query=self.active_assignments(),
                reference=project_ref,
                target_fields=["Id", name_field.field_name],
                carry_field=person_ref.field_name,
            )
            computation = await self._fold_join(request, [spec])
            computation.warnings[:0] = warnings
            result = computation.aggregators[0].result(limit=limit)
            return self._payload(computation, byProject=result.to_list(), total=result.total)

        key = self.cache.generate_key("crowd", "project", limit if limit is not None else "all")
        return await self.cached(key, compute, refresh)

    async def summary(self, refresh: bool = False) -> Dict[str, Any]:
        """Total unique active persons plus the country and language breakdowns, in one pass."""

        async def compute():
            warnings: List[str] = []
            reference = await self._person_reference(warnings)
            fields = await self._person_fields([FieldRole.COUNTRY, FieldRole.LANGUAGE], warnings)
            if reference is None:
                return self._payload(
                    Computation(warnings=warnings),
                    summary={"totalActive": 0, "byCountry": [], "byLanguage": []},
                )

            specs = [DimensionSpec(
                dimensions=(EVERYONE,),
                identity=itemgetter(IDENTITY_FIELD),
            )]
            roles = [r for r in (FieldRole.COUNTRY, FieldRole.LANGUAGE) if r in fields]
            specs += [
                DimensionSpec(
                    dimensions=(make_dimension(r, fields[r].field_name),),
                    identity=itemgetter(IDENTITY_FIELD),
                )
                for r in roles
            ]
            request = JoinRequest(
                source_query=self.active_assignments(),
                reference=reference,
                target_fields=["Id"] + [fields[r].field_name for r in roles],
            )
            computation = await self._fold_join(request, specs)
            computation.warnings[:0] = warnings

            breakdowns = {"byCountry": [], "byLanguage": []}
            for role, aggregator in zip(roles, computation.aggregators[1:]):
                breakdowns[DIMENSION_REPORTS[role.value][0]] = aggregator.result().to_list()
            return self._payload(
                computation,
                summary={"totalActive": computation.aggregators[0].unique_total(), **breakdowns},
            )

        return await self.cached(self.cache.generate_key("crowd", "summary"), compute, refresh)

    # ------------------------------------------------------------------
    # Assignment-level reports
    # ------------------------------------------------------------------

    async def assignment_report(
        self, name: str, limit: Optional[int] = None, refresh: bool = False
    ) -> Dict[str, Any]:
        """Unique persons per value of a field on the assignment itself, across all statuses."""
        if name not in ASSIGNMENT_REPORTS:
            raise KeyError(f"Unknown report '{name}'")
        response_key, role = ASSIGNMENT_REPORTS[name]

        async def compute():
            warnings: List[str] = []
            reference = await self._person_reference(warnings)
            fields = await self._entity_fields(ASSIGNMENT_ENTITY, [role], warnings)
            if reference is None or role not in fields:
                return self._payload(Computation(warnings=warnings), **{response_key: [], "total": 0})

            field_name = fields[role].field_name
            aggregator = Aggregator(DimensionSpec(
                dimensions=(Dimension.for_field(role.value, field_name),),
                identity=field_getter(reference.field_name),
            ))
            query = RecordQuery(
                entity=ASSIGNMENT_ENTITY,
                fields=[reference.field_name, field_name],
                where=[f"{reference.field_name} != null", f"{field_name} != null"],
            )
            computation = await self._fold_query(query, [aggregator])
            computation.warnings[:0] = warnings
            result = aggregator.result(limit=limit)
            return self._payload(computation, **{response_key: result.to_list(), "total": result.total})

        key = self.cache.generate_key("crowd", name, limit if limit is not None else "all")
        return await self.cached(key, compute, refresh)

    async def active_contributors(self, refresh: bool = False) -> Dict[str, Any]:
        """Unique persons on active assignments, and the active assignment rows behind them."""

        async def compute():
            warnings: List[str] = []
            reference = await self._person_reference(warnings)
            if reference is None:
                return self._payload(
                    Computation(warnings=warnings), activeContributors=0, totalActiveOnProjects=0
                )

            persons = Aggregator(DimensionSpec(
                dimensions=(EVERYONE,), identity=field_getter(reference.field_name)
            ))
            rows = Aggregator(DimensionSpec(dimensions=(EVERYONE,)))
            query = self.active_assignments().with_fields(reference.field_name)
            computation = await self._fold_query(query, [persons, rows])
            computation.warnings[:0] = warnings
            return self._payload(
                computation,
                activeContributors=persons.unique_total(),
                totalActiveOnProjects=rows.total(),
            )

        return await self.cached(self.cache.generate_key("crowd", "active-contributors"), compute, refresh)

    async def onboarding_contributors(self, refresh: bool = False) -> Dict[str, Any]:
        """Unique persons with an assignment in any status, counted exactly."""

        async def compute():
            warnings: List[str] = []
            reference = await self._person_reference(warnings)
            if reference is None:
                return self._payload(Computation(warnings=warnings), onboardingContributors=0)

            persons = Aggregator(DimensionSpec(
                dimensions=(EVERYONE,), identity=field_getter(reference.field_name)
            ))
            query = RecordQuery(
                entity=ASSIGNMENT_ENTITY,
                fields=[reference.field_name],
                where=[f"{reference.field_name} != null"],
            )
            computation = await self._fold_query(query, [persons])
            computation.warnings[:0] = warnings
            return self._payload(computation, onboardingContributors=persons.unique_total())

        return await self.cached(
            self.cache.generate_key("crowd", "onboarding-contributors"), compute, refresh
        )

    async def average_duration(self, name: str, refresh: bool = False) -> Dict[str, Any]:
        """Mean days between two assignment dates, over assignments carrying both."""
        if name not in DURATION_REPORTS:
            raise KeyError(f"Unknown report '{name}'")
        response_key, start_role, end_role = DURATION_REPORTS[name]

        async def compute():
            warnings: List[str] = []
            fields = await self._entity_fields(ASSIGNMENT_ENTITY, [start_role, end_role], warnings)
            if len(fields) < 2:
                return self._payload(
                    Computation(warnings=warnings), **{response_key: 0.0, "samples": 0, "skipped": 0}
                )

            start, end = fields[start_role].field_name, fields[end_role].field_name
            durations = DurationAggregator(start, end)
            query = RecordQuery(
                entity=ASSIGNMENT_ENTITY,
                fields=["Id", start, end],
                where=[f"{start} != null", f"{end} != null"],
            )
            computation = await self._fold_query(query, [durations])
            computation.warnings[:0] = warnings
            return self._payload(
                computation,
                **{
                    response_key: durations.mean_days(),
                    "samples": durations.samples,
                    "skipped": durations.skipped,
                },
            )

        return await self.cached(self.cache.generate_key("crowd", "avg", name), compute, refresh)

    async def metrics(self, refresh: bool = False) -> Dict[str, Any]:
        """
        Headline totals: applications and qualifications summed over
        projects, plus active and productive assignment rows. Both queries
        share one deadline.
        """

        async def compute():
            deadline = Deadline(self.deadline_seconds)
            warnings: List[str] = []
            data = {
                "totalApplications": 0,
                "totalQualified": 0,
                "totalActiveOnProjects": 0,
                "totalProductive": 0,
            }
            computations: List[Computation] = []

            totals = {"totalApplications": FieldRole.TOTAL_APPLIED, "totalQualified": FieldRole.TOTAL_QUALIFIED}
            fields = await self._entity_fields(PROJECT_ENTITY, list(totals.values()), warnings)
            if fields:
                sums = FieldSums({
                    key: fields[role].field_name for key, role in totals.items() if role in fields
                })
                query = RecordQuery(
                    entity=PROJECT_ENTITY,
                    fields=["Id"] + [f.field_name for f in fields.values()],
                )
                computations.append(await self._fold_query(query, [sums], deadline))
                data.update(sums.totals())

            statuses = Aggregator(DimensionSpec(
                dimensions=(Dimension.for_field("status", ASSIGNMENT_STATUS_FIELD),)
            ))
            query = RecordQuery(
                entity=ASSIGNMENT_ENTITY,
                fields=["Id", ASSIGNMENT_STATUS_FIELD],
                where=[in_clause(ASSIGNMENT_STATUS_FIELD, [ACTIVE_STATUS, PRODUCTIVE_STATUS])],
            )
            computations.append(await self._fold_query(query, [statuses], deadline))
            counts = statuses.bucket_counts()
            data["totalActiveOnProjects"] = counts.get((ACTIVE_STATUS,), 0)
            data["totalProductive"] = counts.get((PRODUCTIVE_STATUS,), 0)

            merged = Computation(
                partial=any(c.partial for c in computations),
                warnings=warnings + [w for c in computations for w in c.warnings],
            )
            return self._payload(merged, **data)

        return await self.cached(self.cache.generate_key("crowd", "metrics"), compute, refresh)

    # ------------------------------------------------------------------
    # Snapshots / trends
    # ------------------------------------------------------------------

    @staticmethod
    def snapshot_series(summary: Dict[str, Any]) -> Dict[str, int]:
        series = {TOTAL_SERIES: summary["totalActive"]}
        for prefix, rows in (("country", summary["byCountry"]), ("language", summary["byLanguage"])):
            for row in rows:
                if row["key"] != UNKNOWN:
                    series[f"{prefix}:{row['key']}"] = row["count"]
        return series

    def record_snapshot(self, response: Dict[str, Any]):
        """Append today's snapshot from a freshly computed, complete summary response."""
        if response.get("cached") or response.get("partial"):
            logger.info("[ReportService] Skipping snapshot for cached or partial summary")
            return None
        return self.snapshots.append(self.snapshot_series(response["summary"]))

    def trends(self, days: int = DEFAULT_TREND_DAYS, series: Optional[List[str]] = None) -> Dict[str, Any]:
        trends = self.snapshots.all_trends(days=days, series=series)
        return {
            "trends": {k: [p.model_dump() for p in points] for k, points in trends.items()},
            "days": days,
            "since": self.snapshots.since(days),
        }

    async def health(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.get_stats().model_dump(),
            "snapshots": self.snapshots.count(),
        }

    async def close(self):
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()
