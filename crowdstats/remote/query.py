"""
Query description and rendering to the remote source's query text.
"""
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional


def quote_literal(value: str) -> str:
    """Quote a string literal, doubling embedded single quotes."""
    return "'" + str(value).replace("'", "''") + "'"


def in_clause(field_name: str, values: Iterable[str]) -> str:
    return f"{field_name} IN ({','.join(quote_literal(v) for v in values)})"


@dataclass(frozen=True)
class RecordQuery:
    entity: str
    fields: List[str]
    where: List[str] = field(default_factory=list)
    order_by: Optional[str] = None

    def with_fields(self, *extra: str) -> "RecordQuery":
        merged = list(self.fields)
        for name in extra:
            if name not in merged:
                merged.append(name)
        return replace(self, fields=merged)

    def with_where(self, *conditions: str) -> "RecordQuery":
        return replace(self, where=list(self.where) + list(conditions))

    def to_text(self) -> str:
        if not self.fields:
            raise ValueError(f"Query on {self.entity} selects no fields")
        parts = [f"SELECT {', '.join(self.fields)}", f"FROM {self.entity}"]
        if self.where:
            parts.append("WHERE " + " AND ".join(self.where))
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by}")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.to_text()
