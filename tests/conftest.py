"""
Shared fixtures: an in-memory remote source and a canned contributor org.

FakeRemoteSource understands the subset of query text the engine emits:
  SELECT a, b, Rel__r.c FROM Entity WHERE x = 'v' AND y != null AND Id IN ('1','2')
"""

import asyncio
import itertools
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytest

from crowdstats.domain import EntityCatalog, QueryPage
from crowdstats.engine.field_discovery import derive_relationship_name
from crowdstats.remote.errors import RemoteQueryRejected, RemoteSourceError

_QUERY_RE = re.compile(
    r"^SELECT (?P<fields>.+?) FROM (?P<entity>\w+)(?: WHERE (?P<where>.+?))?(?: ORDER BY (?P<order>.+))?$"
)
_EQ_RE = re.compile(r"^(\w+) = '((?:[^']|'')*)'$")
_NOT_NULL_RE = re.compile(r"^(\w+) != null$")
_IN_RE = re.compile(r"^(\w+) IN \((.*)\)$")
_LITERAL_RE = re.compile(r"'((?:[^']|'')*)'")


class ManualClock:
    """Callable clock advanced explicitly by tests (or by the fake source)."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRemoteSource:
    """
    Paginating in-memory remote source.

    reject_relationships   refuse any "Rel__r.field" traversal (Tier 1)
    failing_pages          {(entity, page_number)} raise on those pages
    failing_lookup_ids     raise on any query whose Id IN list contains one
    latency                real seconds slept per round trip
    clock, tick            advance a ManualClock by tick per round trip
    """

    def __init__(
        self,
        tables: Dict[str, List[Dict[str, Any]]],
        catalogs: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        page_size: int = 2,
        reject_relationships: bool = False,
        failing_pages: Iterable[Tuple[str, int]] = (),
        failing_lookup_ids: Iterable[str] = (),
        latency: float = 0.0,
        clock: Optional[ManualClock] = None,
        tick: float = 0.0,
    ):
        self.tables = tables
        self.catalogs = catalogs or {}
        self.page_size = page_size
        self.reject_relationships = reject_relationships
        self.failing_pages: Set[Tuple[str, int]] = set(failing_pages)
        self.failing_lookup_ids = set(failing_lookup_ids)
        self.latency = latency
        self.clock = clock
        self.tick = tick

        self.queries: List[str] = []
        self.describes: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._cursors: Dict[str, Tuple[str, List[Dict[str, Any]], int, int]] = {}
        self._cursor_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Round-trip bookkeeping
    # ------------------------------------------------------------------

    async def _round_trip(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.clock is not None:
                self.clock.advance(self.tick)
            await asyncio.sleep(self.latency)
        finally:
            self.in_flight -= 1

    # ------------------------------------------------------------------
    # Query evaluation
    # ------------------------------------------------------------------

    def _relationships(self, entity: str) -> Dict[str, Tuple[str, str]]:
        """relationship name -> (reference field, target entity)"""
        out = {}
        for f in self.catalogs.get(entity, []):
            targets = f.get("referenceTo") or []
            if targets:
                rel = f.get("relationshipName") or derive_relationship_name(f["name"])
                out[rel] = (f["name"], targets[0])
        return out

    def _matches(self, record: Dict[str, Any], condition: str) -> bool:
        m = _EQ_RE.match(condition)
        if m:
            return record.get(m.group(1)) == m.group(2).replace("''", "'")
        m = _NOT_NULL_RE.match(condition)
        if m:
            return record.get(m.group(1)) is not None
        m = _IN_RE.match(condition)
        if m:
            values = {v.replace("''", "'") for v in _LITERAL_RE.findall(m.group(2))}
            return record.get(m.group(1)) in values
        raise ValueError(f"Unsupported condition: {condition}")

    def _project(self, entity: str, record: Dict[str, Any], fields: List[str]) -> Dict[str, Any]:
        relationships = self._relationships(entity)
        row: Dict[str, Any] = {}
        for name in fields:
            if "." not in name:
                row[name] = record.get(name)
                continue
            rel, target_field = name.split(".", 1)
            ref_field, target_entity = relationships[rel]
            target = next(
                (t for t in self.tables.get(target_entity, []) if t.get("Id") == record.get(ref_field)),
                None,
            )
            if target is None:
                row[rel] = None
            else:
                nested = row.get(rel) or {}
                nested[target_field] = target.get(target_field)
                row[rel] = nested
        return row

    def _evaluate(self, query_text: str) -> Tuple[str, List[Dict[str, Any]]]:
        m = _QUERY_RE.match(query_text)
        if not m:
            raise RemoteQueryRejected(f"Cannot parse: {query_text}", 400, "MALFORMED_QUERY")
        entity = m.group("entity")
        fields = [f.strip() for f in m.group("fields").split(",")]
        conditions = m.group("where").split(" AND ") if m.group("where") else []

        if self.reject_relationships and any("." in f for f in fields):
            raise RemoteQueryRejected(
                f"Didn't understand relationship in field path on {entity}", 400, "INVALID_FIELD"
            )
        for condition in conditions:
            in_match = _IN_RE.match(condition)
            if in_match:
                ids = {v for v in _LITERAL_RE.findall(in_match.group(2))}
                if ids & self.failing_lookup_ids:
                    raise RemoteSourceError(f"Lookup on {entity} failed", 503, "SERVER_UNAVAILABLE")

        rows = [
            self._project(entity, r, fields)
            for r in self.tables.get(entity, [])
            if all(self._matches(r, c) for c in conditions)
        ]
        return entity, rows

    def _page(self, entity: str, rows: List[Dict[str, Any]], offset: int, page_number: int) -> QueryPage:
        if (entity, page_number) in self.failing_pages:
            raise RemoteSourceError(f"Page {page_number} of {entity} failed", 500, "SERVER_ERROR")
        chunk = rows[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        if next_offset >= len(rows):
            return QueryPage(records=chunk, done=True, total_size=len(rows))
        cursor = f"/services/data/v59.0/query/cursor-{next(self._cursor_ids)}-{next_offset}"
        self._cursors[cursor] = (entity, rows, next_offset, page_number + 1)
        return QueryPage(records=chunk, done=False, next_cursor=cursor, total_size=len(rows))

    # ------------------------------------------------------------------
    # RemoteSource interface
    # ------------------------------------------------------------------

    async def query(self, query_text: str) -> QueryPage:
        self.queries.append(query_text)
        await self._round_trip()
        entity, rows = self._evaluate(query_text)
        return self._page(entity, rows, 0, 1)

    async def query_more(self, cursor: str) -> QueryPage:
        await self._round_trip()
        entity, rows, offset, page_number = self._cursors.pop(cursor)
        return self._page(entity, rows, offset, page_number)

    async def describe(self, entity_type: str) -> EntityCatalog:
        self.describes.append(entity_type)
        await self._round_trip()
        if entity_type not in self.catalogs:
            raise RemoteSourceError(f"sObject type '{entity_type}' is not supported", 404, "NOT_FOUND")
        return EntityCatalog(name=entity_type, fields=self.catalogs[entity_type])

    def lookup_queries(self, entity: str) -> List[str]:
        return [q for q in self.queries if f"FROM {entity} " in q and " IN (" in q]


# ---------------------------------------------------------------------------
# Canned contributor org
# ---------------------------------------------------------------------------

CONTACT_FIELDS = [
    {"name": "Id", "type": "id"},
    {"name": "Name", "type": "string", "nameField": True},
    {"name": "MailingCountry", "type": "string"},
    {"name": "Primary_Language_Spoken__c", "type": "picklist"},
    {"name": "Age__c", "type": "double"},
    {"name": "Gender__c", "type": "picklist"},
    {"name": "Education_Level__c", "type": "picklist"},
    {"name": "Contributor_Status__c", "type": "picklist"},
    {"name": "Contributor_Type__c", "type": "picklist"},
    {"name": "LeadSource", "type": "picklist"},
]

ASSIGNMENT_FIELDS = [
    {"name": "Id", "type": "id"},
    {"name": "Status__c", "type": "picklist"},
    {"name": "Contact__c", "type": "reference", "referenceTo": ["Contact"], "relationshipName": None},
    {"name": "Project__c", "type": "reference", "referenceTo": ["Project__c"], "relationshipName": "Project__r"},
    {"name": "KYC_Status__c", "type": "picklist"},
    {"name": "Application_Received_Date__c", "type": "datetime"},
    {"name": "Application_Date__c", "type": "date"},
    {"name": "Active_Date__c", "type": "date"},
]

PROJECT_FIELDS = [
    {"name": "Id", "type": "id"},
    {"name": "Name", "type": "string", "nameField": True},
    {"name": "Total_Applied__c", "type": "double"},
    {"name": "Total_Qualified__c", "type": "double"},
]


def _contact(cid, country, language, age, gender, education="Bachelor", status="Active", ctype="Annotator", source="Referral"):
    return {
        "Id": cid,
        "Name": f"Contributor {cid}",
        "MailingCountry": country,
        "Primary_Language_Spoken__c": language,
        "Age__c": age,
        "Gender__c": gender,
        "Education_Level__c": education,
        "Contributor_Status__c": status,
        "Contributor_Type__c": ctype,
        "LeadSource": source,
    }


def _assignment(aid, contact, project, status="Active", kyc=None, received=None, applied=None, active=None):
    return {
        "Id": aid,
        "Status__c": status,
        "Contact__c": contact,
        "Project__c": project,
        "KYC_Status__c": kyc,
        "Application_Received_Date__c": received,
        "Application_Date__c": applied,
        "Active_Date__c": active,
    }


CONTACTS = [
    _contact("c1", "US", "English", 24, "Female", education="Master"),
    _contact("c2", "US", "Spanish", 31, "Male"),
    _contact("c3", "India", "Hindi", 45, "Female", education="Master"),
    _contact("c4", "India", "English", 17, "Male", education="High School"),
    _contact("c5", None, " English ", "abc", None, education=None),
    _contact("c6", "Brazil", "Portuguese", 70, "Female"),
]

ASSIGNMENTS = [
    _assignment("a1", "c1", "p1", kyc="Verified", received="2026-01-01", applied="2026-01-04", active="2026-01-11"),
    _assignment("a2", "c1", "p2", kyc="Verified", received="2026-01-02", applied="2026-01-03"),
    _assignment("a3", "c2", "p1", kyc="Pending", received="2026-01-05", applied="2026-01-10", active="2026-01-20"),
    _assignment("a4", "c3", "p1", kyc="Verified"),
    _assignment("a5", "c3", "p1"),
    _assignment("a6", "c4", "p2", kyc="Rejected", received="2026-02-10", applied="2026-02-01"),
    _assignment("a7", "c5", "p2", kyc="Pending"),
    _assignment("a8", "c6", "p1", status="Inactive", kyc="Verified",
                received="2026-01-01T08:00:00.000+0000", applied="2026-01-08", active="2026-01-09"),
    _assignment("a9", None, "p1", kyc="Verified"),
    _assignment("a10", "c5", "p1", kyc="Pending"),
    _assignment("a11", "c2", "p2", status="Production"),
]

PROJECTS = [
    {"Id": "p1", "Name": "Alpha", "Total_Applied__c": 120, "Total_Qualified__c": 80},
    {"Id": "p2", "Name": "Beta", "Total_Applied__c": 30.0, "Total_Qualified__c": "12"},
]


def build_source(**kwargs) -> FakeRemoteSource:
    return FakeRemoteSource(
        tables={
            "Contact": [dict(c) for c in CONTACTS],
            "Contributor_Project__c": [dict(a) for a in ASSIGNMENTS],
            "Project__c": [dict(p) for p in PROJECTS],
        },
        catalogs={
            "Contact": CONTACT_FIELDS,
            "Contributor_Project__c": ASSIGNMENT_FIELDS,
            "Project__c": PROJECT_FIELDS,
        },
        **kwargs,
    )


@pytest.fixture()
def make_source():
    return build_source


@pytest.fixture()
def source() -> FakeRemoteSource:
    return build_source()


@pytest.fixture()
def rejecting_source() -> FakeRemoteSource:
    return build_source(reject_relationships=True)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(start=1000.0)
