"""
Field Discovery - maps semantic roles onto concrete remote field names.

Field names differ between deployments of the remote source (custom fields
carry a "__c" suffix and are named by whoever configured the org). Each role
owns an ordered list of candidates: exact known names first, then keyword
heuristics. The first candidate that matches a field in the entity's
catalog wins. Resolution is a pure function of (catalog, role) so it can be
tested against synthetic catalogs; FieldDiscovery adds the one-time catalog
fetch and memoization on top.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from crowdstats.domain import EntityCatalog, FieldDescriptor, FieldRole, ResolvedField
from crowdstats.domain.models import CUSTOM_SUFFIX, RELATIONSHIP_SUFFIX
from crowdstats.remote.errors import SchemaNotFound
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?![a-z])|\d+")


def name_tokens(name: str) -> List[str]:
    """Split a field name on underscores and camel-case boundaries, lowercased."""
    return [t.lower() for t in _TOKEN_RE.findall(name)]


class Candidate(ABC):
    """One ranked convention for locating a role's field."""

    @abstractmethod
    def matches(self, descriptor: FieldDescriptor) -> bool:
        pass


@dataclass(frozen=True)
class ExactName(Candidate):
    name: str
    case_sensitive: bool = True

    def matches(self, descriptor: FieldDescriptor) -> bool:
        if self.case_sensitive:
            return descriptor.name == self.name
        return descriptor.name.lower() == self.name.lower()


@dataclass(frozen=True)
class Keyword(Candidate):
    """
    All keywords must appear in the field name.

    whole_word matches against name tokens instead of raw substrings, so
    "age" matches Contributor_Age__c but not Language__c.
    """
    keywords: Tuple[str, ...]
    custom_only: bool = False
    whole_word: bool = False
    exclude: Tuple[str, ...] = ()

    def matches(self, descriptor: FieldDescriptor) -> bool:
        if self.custom_only and not descriptor.is_custom:
            return False
        lowered = descriptor.name.lower()
        if any(word in lowered for word in self.exclude):
            return False
        if self.whole_word:
            tokens = name_tokens(descriptor.name)
            return all(k in tokens for k in self.keywords)
        return all(k in lowered for k in self.keywords)


@dataclass(frozen=True)
class NameField(Candidate):
    def matches(self, descriptor: FieldDescriptor) -> bool:
        return descriptor.name_field


@dataclass(frozen=True)
class ReferenceTo(Candidate):
    """
    A reference field pointing at target. With names set, only those field
    names qualify; with loose set, a substring of the referenced entity
    name is enough.
    """
    target: str
    names: Tuple[str, ...] = ()
    loose: bool = False

    def matches(self, descriptor: FieldDescriptor) -> bool:
        if not descriptor.is_reference:
            return False
        if self.names and descriptor.name not in self.names:
            return False
        if self.loose:
            stem = self.target.replace(CUSTOM_SUFFIX, "").lower()
            return any(stem in ref.lower() for ref in descriptor.reference_to)
        return self.target in descriptor.reference_to


def _exact(*names: str) -> List[Candidate]:
    return [ExactName(n) for n in names]


ROLE_CANDIDATES: Dict[FieldRole, List[Candidate]] = {
    FieldRole.COUNTRY: _exact("MailingCountry", "OtherCountry") + [
        Keyword(("country",), exclude=("code",)),
    ],
    FieldRole.LANGUAGE: _exact("Primary_Language_Spoken__c", "Verification_Language__c") + [
        Keyword(("language",), custom_only=True),
        Keyword(("language",)),
    ],
    FieldRole.AGE: _exact("Age__c") + [
        Keyword(("age",), custom_only=True, whole_word=True),
        ExactName("age", case_sensitive=False),
    ],
    FieldRole.GENDER: _exact("Gender__c") + [
        Keyword(("gender",), custom_only=True),
        ExactName("gender", case_sensitive=False),
    ],
    FieldRole.EDUCATION: _exact("Education__c", "Education_Level__c") + [
        Keyword(("education",), custom_only=True),
    ],
    FieldRole.STATUS: _exact(
        "Contributor_Status__c", "ContributorStatus__c", "Status__c",
        "Contact_Status__c", "ContactStatus__c",
    ),
    FieldRole.TYPE: _exact(
        "Contributor_Type__c", "ContributorType__c", "Type__c",
        "Contact_Type__c", "ContactType__c",
    ),
    FieldRole.SOURCE: _exact(
        "Source_Details__c", "SourceDetails__c", "Source_Detail__c", "SourceDetail__c",
        "Source__c", "LeadSource", "Lead_Source__c", "LeadSource__c",
        "Source_Information__c", "SourceInfo__c", "Source_Data__c",
        "Contributor_Source__c", "Contact_Source__c",
    ) + [
        Keyword(("source", "detail")),
        Keyword(("source",), custom_only=True),
    ],
    FieldRole.NAME: [NameField(), ExactName("Name")],
    FieldRole.KYC_STATUS: _exact("KYC_Status__c") + [
        Keyword(("kyc", "status")),
        Keyword(("government_id_status",)),
        Keyword(("id_status",)),
        Keyword(("kyc",)),
        Keyword(("government_id",)),
    ],
    FieldRole.APPLICATION_RECEIVED: _exact("Application_Received_Date__c") + [
        Keyword(("application", "received"), custom_only=True),
        Keyword(("received", "date"), custom_only=True),
    ],
    FieldRole.APPLIED_DATE: _exact("Application_Date__c", "Applied_Date__c") + [
        Keyword(("applied", "date"), custom_only=True),
        Keyword(("application", "date"), custom_only=True, exclude=("received",)),
    ],
    FieldRole.ACTIVE_DATE: _exact("Active_Date__c", "Activation_Date__c") + [
        Keyword(("active", "date"), custom_only=True, exclude=("inactive",)),
    ],
    FieldRole.TOTAL_APPLIED: _exact("Total_Applied__c") + [
        Keyword(("total", "applied"), custom_only=True),
    ],
    FieldRole.TOTAL_QUALIFIED: _exact("Total_Qualified__c") + [
        Keyword(("total", "qualified"), custom_only=True),
    ],
}

# Known reference field names per target entity, tried before any generic match.
REFERENCE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "Contact": ("Contact__c", "Contributor__c", "ContactId"),
    "Project__c": ("Project__c",),
    "Account": ("Account__c", "AccountId"),
}


def reference_candidates(target: str) -> List[Candidate]:
    candidates: List[Candidate] = []
    aliases = REFERENCE_ALIASES.get(target, ())
    if aliases:
        candidates.append(ReferenceTo(target, names=aliases))
    candidates.append(ReferenceTo(target))
    candidates.append(ReferenceTo(target, loose=True))
    return candidates


def candidates_for(role: FieldRole, target: Optional[str] = None) -> List[Candidate]:
    if role == FieldRole.REFERENCE:
        if not target:
            raise ValueError("Reference role requires a target entity")
        return reference_candidates(target)
    return ROLE_CANDIDATES[role]


def derive_relationship_name(field_name: str) -> str:
    """Relationship name to use when the catalog omits one."""
    if field_name.endswith(CUSTOM_SUFFIX):
        return field_name[: -len(CUSTOM_SUFFIX)] + RELATIONSHIP_SUFFIX
    if field_name.endswith("Id") and len(field_name) > 2:
        return field_name[:-2]
    return field_name


def resolve_field(
    catalog: EntityCatalog,
    role: FieldRole,
    target: Optional[str] = None,
) -> Optional[ResolvedField]:
    """Return the first catalog field matched by the role's ranked candidates."""
    role = FieldRole(role)
    for candidate in candidates_for(role, target):
        for descriptor in catalog.fields:
            if not candidate.matches(descriptor):
                continue
            relationship_name = None
            target_entity = None
            if role == FieldRole.REFERENCE:
                relationship_name = descriptor.relationship_name or derive_relationship_name(
                    descriptor.name
                )
                target_entity = target if target in descriptor.reference_to else (
                    descriptor.reference_to[0] if descriptor.reference_to else target
                )
            return ResolvedField(
                entity_type=catalog.entity_type,
                role_name=role_key(role, target),
                field_name=descriptor.name,
                relationship_name=relationship_name,
                target_entity=target_entity,
            )
    return None


def role_key(role: FieldRole, target: Optional[str] = None) -> str:
    role = FieldRole(role)
    if role == FieldRole.REFERENCE:
        return f"reference:{target}"
    return role.value


class FieldDiscovery:
    """
    Resolves roles against catalogs fetched once per entity.

    Catalogs and resolutions live for the lifetime of the instance;
    invalidate() drops them after a remote schema change.
    """

    def __init__(self, source):
        self._source = source
        self._catalogs: Dict[str, EntityCatalog] = {}
        self._resolved: Dict[Tuple[str, str], Optional[ResolvedField]] = {}

    async def catalog(self, entity_type: str) -> Optional[EntityCatalog]:
        cached = self._catalogs.get(entity_type)
        if cached is not None:
            return cached
        try:
            catalog = await self._source.describe(entity_type)
        except Exception as e:
            # Reporting is best-effort: an undescribable entity means unavailable dimensions.
            logger.warning(f"[FieldDiscovery] Could not describe {entity_type}: {e}")
            return None
        self._catalogs[entity_type] = catalog
        logger.info(f"[FieldDiscovery] Cached catalog for {entity_type}: {len(catalog.fields)} fields")
        return catalog

    async def resolve(
        self,
        entity_type: str,
        role: FieldRole,
        target: Optional[str] = None,
    ) -> Optional[ResolvedField]:
        key = (entity_type, role_key(role, target))
        if key in self._resolved:
            return self._resolved[key]

        catalog = await self.catalog(entity_type)
        if catalog is None:
            return None

        resolved = resolve_field(catalog, role, target)
        self._resolved[key] = resolved
        if resolved is None:
            logger.warning(f"[FieldDiscovery] No field for role '{key[1]}' on {entity_type}")
        else:
            logger.info(
                f"[FieldDiscovery] {entity_type}.{key[1]} -> {resolved.field_name}"
                + (f" (relationship: {resolved.relationship_name})" if resolved.relationship_name else "")
            )
        return resolved

    async def require(
        self,
        entity_type: str,
        role: FieldRole,
        target: Optional[str] = None,
    ) -> ResolvedField:
        resolved = await self.resolve(entity_type, role, target)
        if resolved is None:
            raise SchemaNotFound(entity_type, role_key(role, target))
        return resolved

    async def resolve_many(
        self, entity_type: str, roles: Iterable[FieldRole]
    ) -> Dict[FieldRole, Optional[ResolvedField]]:
        return {role: await self.resolve(entity_type, role) for role in roles}

    def invalidate(self, entity_type: Optional[str] = None):
        if entity_type is None:
            self._catalogs.clear()
            self._resolved.clear()
            return
        self._catalogs.pop(entity_type, None)
        for key in [k for k in self._resolved if k[0] == entity_type]:
            del self._resolved[key]
