"""
Pydantic base for camelCase payloads: describe() catalogs read from the
remote source and the snapshot log written to disk.
"""

from typing import Any, Dict

from humps import camelize
from pydantic import BaseModel, ConfigDict


class CamelCaseModel(BaseModel):
    """Accepts camelCase or snake_case keys and drops unknown ones; writes camelCase."""
    model_config = ConfigDict(
        alias_generator=camelize,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
