from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AssignmentId = Union[int, str]


class AssignmentSource(str, Enum):
    """Backing store an assignment lives in."""

    RELATIONAL = "relational"
    EPHEMERAL = "ephemeral"


@dataclass(frozen=True)
class RelationalId:
    """Threat model persisted in PostgreSQL."""

    value: AssignmentId
    source = AssignmentSource.RELATIONAL


@dataclass(frozen=True)
class EphemeralId:
    """AI-generated subject stored in Redis."""

    value: str
    source = AssignmentSource.EPHEMERAL


ClassifiedId = Union[RelationalId, EphemeralId]


class AssignmentRecord(BaseModel):
    """
    A threat model or subject assigned to a project, as returned to callers.

    Relational rows carry their remaining columns (status, description, ...)
    as extra fields.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: AssignmentId
    title: Optional[str] = None
    source: AssignmentSource
    created_at: Optional[datetime] = None
    threat_count: int = 0
    model: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None

    def sort_key(self) -> datetime:
        if self.created_at is None:
            return datetime.min.replace(tzinfo=timezone.utc)
        if self.created_at.tzinfo is None:
            return self.created_at.replace(tzinfo=timezone.utc)
        return self.created_at


class AssignThreatModelsRequest(BaseModel):
    threat_model_ids: List[AssignmentId] = Field(alias="threatModelIds")
