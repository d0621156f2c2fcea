from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    display_name: str | None = None
    correlation_id: str | None = None


SYSTEM_ACTOR = ActorUser(user_id="system", display_name="System")


def snapshot(schema: type[BaseModel], instance: Any) -> dict[str, Any]:
    """JSON-safe view of an ORM row for audit before/after payloads."""
    return schema.model_validate(instance).model_dump(mode="json")
