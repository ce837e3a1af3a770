"""
Tests for the two-tier join.

Covers:
  1. Tier 1 (relationship traversal) is used when the source accepts it
  2. Tier 2 (id lookups) takes over on rejection and yields the same aggregate
  3. Failed lookup batches are skipped, not fatal
  4. Lookups never exceed the parallelism cap
  5. Remaining lookup waves are skipped once the deadline passes
  6. Lookup batches cut short by the deadline or a failed continuation mark the join partial
"""

import asyncio

import pytest

from crowdstats.domain import ResolvedField
from crowdstats.engine.aggregation import Dimension, DimensionSpec, fold
from crowdstats.engine.fetcher import Deadline
from crowdstats.engine.join_strategy import (
    TIER_LOOKUP,
    TIER_RELATIONSHIP,
    JoinRequest,
    TwoTierJoin,
    chunked,
    resolve_cross_entity_field,
)
from crowdstats.remote.query import RecordQuery

from conftest import ManualClock, build_source

ACTIVE = RecordQuery(
    entity="Contributor_Project__c",
    fields=["Id"],
    where=["Status__c = 'Active'"],
)

CONTACT_REF = ResolvedField(
    entity_type="Contributor_Project__c",
    role_name="reference:Contact",
    field_name="Contact__c",
    relationship_name="Contact__r",
    target_entity="Contact",
)

PROJECT_REF = ResolvedField(
    entity_type="Contributor_Project__c",
    role_name="reference:Project__c",
    field_name="Project__c",
    relationship_name="Project__r",
    target_entity="Project__c",
)

COUNTRY_REQUEST = JoinRequest(
    source_query=ACTIVE,
    reference=CONTACT_REF,
    target_fields=["Id", "MailingCountry"],
)

PROJECT_REQUEST = JoinRequest(
    source_query=ACTIVE,
    reference=PROJECT_REF,
    target_fields=["Id", "Name"],
    carry_field="Contact__c",
)


async def _rows_as_records(join, request):
    async for rows in join.stream(request):
        yield [dict(row.values, identity=row.identity) for row in rows]


def _aggregate(source, request, field_name, **kwargs):
    spec = DimensionSpec(
        dimensions=(Dimension.for_field("value", field_name),),
        identity=lambda r: r["identity"],
    )
    join = TwoTierJoin(source, Deadline(10.0), **kwargs)
    aggregator = asyncio.run(fold(_rows_as_records(join, request), spec))
    return aggregator.bucket_counts(), join.report


# ---------------------------------------------------------------------------
# Tier selection
# ---------------------------------------------------------------------------

def test_relationship_query_text():
    join = TwoTierJoin(build_source(), Deadline(10.0))
    assert join.relationship_query(COUNTRY_REQUEST).to_text() == (
        "SELECT Id, Contact__c, Contact__r.Id, Contact__r.MailingCountry "
        "FROM Contributor_Project__c WHERE Status__c = 'Active' AND Contact__c != null"
    )


def test_tier_one_used_when_accepted():
    source = build_source()
    buckets, report = _aggregate(source, COUNTRY_REQUEST, "MailingCountry")

    assert report.tier == TIER_RELATIONSHIP
    assert report.rejection is None
    assert source.lookup_queries("Contact") == []
    assert buckets == {("US",): 2, ("India",): 2, ("Unknown",): 1}


def test_tier_two_after_rejection():
    source = build_source(reject_relationships=True)
    buckets, report = _aggregate(source, COUNTRY_REQUEST, "MailingCountry")

    assert report.tier == TIER_LOOKUP
    assert "relationship" in report.rejection
    assert len(source.lookup_queries("Contact")) == 1
    assert buckets == {("US",): 2, ("India",): 2, ("Unknown",): 1}


@pytest.mark.parametrize("request_, field_name", [
    (COUNTRY_REQUEST, "MailingCountry"),
    (PROJECT_REQUEST, "Name"),
])
def test_both_tiers_produce_identical_aggregates(request_, field_name):
    tier_one, _ = _aggregate(build_source(), request_, field_name)
    tier_two, report = _aggregate(
        build_source(reject_relationships=True), request_, field_name, batch_size=2
    )
    assert report.tier == TIER_LOOKUP
    assert tier_one == tier_two


def test_carried_identity_counts_persons_per_project():
    buckets, _ = _aggregate(build_source(reject_relationships=True), PROJECT_REQUEST, "Name")
    assert buckets == {("Alpha",): 4, ("Beta",): 3}


# ---------------------------------------------------------------------------
# Tier 2 resilience and bounds
# ---------------------------------------------------------------------------

def test_failed_lookup_batch_is_skipped():
    source = build_source(reject_relationships=True, failing_lookup_ids={"c3"})
    buckets, report = _aggregate(source, COUNTRY_REQUEST, "MailingCountry", batch_size=1)

    assert report.lookup_batches == 5
    assert report.failed_batches == 1
    assert report.partial is True
    assert buckets == {("US",): 2, ("India",): 1, ("Unknown",): 1}


def test_lookup_batches_respect_batch_size():
    source = build_source(reject_relationships=True)
    _, report = _aggregate(source, COUNTRY_REQUEST, "MailingCountry", batch_size=2)

    lookups = source.lookup_queries("Contact")
    assert report.lookup_batches == 3
    assert len(lookups) == 3
    assert "Id IN ('c1','c2')" in lookups[0]


def test_parallelism_cap_holds():
    source = build_source(reject_relationships=True, latency=0.01)
    _, report = _aggregate(
        source, COUNTRY_REQUEST, "MailingCountry", batch_size=1, parallelism=2
    )

    assert report.lookup_batches == 5
    assert source.max_in_flight <= 2


def test_deadline_skips_remaining_waves():
    clock = ManualClock()
    source = build_source(reject_relationships=True, page_size=100, clock=clock, tick=1.0)
    join = TwoTierJoin(source, Deadline(3.5, clock=clock), batch_size=1, parallelism=2)

    async def run():
        return [row async for rows in join.stream(COUNTRY_REQUEST) for row in rows]

    rows = asyncio.run(run())
    # t=1 rejected traversal, t=2 key scan, t=3..4 first wave; deadline passed before wave 2
    assert join.report.lookup_batches == 2
    assert join.report.skipped_batches == 3
    assert join.report.partial is True
    assert {row.key for row in rows} == {"c1", "c2"}


def test_lookup_batches_cut_off_by_deadline_mark_join_partial():
    clock = ManualClock()
    source = build_source(reject_relationships=True, page_size=100, clock=clock, tick=1.0)
    join = TwoTierJoin(source, Deadline(3.0, clock=clock), batch_size=1, parallelism=5)

    async def run():
        return [row async for rows in join.stream(COUNTRY_REQUEST) for row in rows]

    rows = asyncio.run(run())
    # t=1 rejected traversal, t=2 key scan, t=3 first lookup; the other four find the deadline passed
    assert {row.key for row in rows} == {"c1"}
    assert join.report.lookup_batches == 5
    assert join.report.skipped_batches == 4
    assert join.report.failed_batches == 0
    assert join.report.partial is True


def test_lookup_continuation_failure_counts_as_failed_batch():
    source = build_source(reject_relationships=True, page_size=1, failing_pages={("Contact", 2)})
    buckets, report = _aggregate(source, COUNTRY_REQUEST, "MailingCountry", batch_size=2)

    # batches [c1,c2] and [c3,c4] lose their second page; [c5] is a single page
    assert report.lookup_batches == 3
    assert report.failed_batches == 2
    assert report.partial is True
    assert buckets == {("US",): 1, ("India",): 1, ("Unknown",): 1}


def test_no_keys_means_no_lookups():
    source = build_source(reject_relationships=True)
    source.tables["Contributor_Project__c"] = []
    _, report = _aggregate(source, COUNTRY_REQUEST, "MailingCountry")

    assert report.tier == TIER_LOOKUP
    assert report.lookup_batches == 0
    assert source.lookup_queries("Contact") == []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_resolve_cross_entity_field_streams_rows():
    async def run():
        rows = []
        async for batch in resolve_cross_entity_field(build_source(), COUNTRY_REQUEST, Deadline(10.0)):
            rows.extend(batch)
        return rows

    rows = asyncio.run(run())
    assert {row.key for row in rows} == {"c1", "c2", "c3", "c4", "c5"}
    assert all("MailingCountry" in row.values for row in rows)


def test_chunked():
    assert chunked(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert chunked([], 3) == []


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        TwoTierJoin(build_source(), Deadline(1.0), parallelism=0)
