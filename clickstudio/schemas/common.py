"""
Shared pydantic base and the success envelope.

Wire payloads use camelCase keys; request models also accept snake_case.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def ok(data: Any = None) -> dict[str, Any]:
    if isinstance(data, CamelModel):
        data = data.dump()
    return {"success": True, "data": data}
