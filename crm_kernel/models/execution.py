"""Execution results returned for every submission."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from crm_kernel.errors import ErrorKind
from crm_kernel.models.action import Violation
from crm_kernel.models.entity import Entity
from crm_kernel.models.event import Event


class ExecutionStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ExecutionResult(BaseModel):
    """Outcome of one submission. Always carries the recorded event."""

    status: ExecutionStatus
    event: Event
    entity_snapshot: Optional[Entity] = None
    violations: List[Violation] = []
    error_kind: Optional[ErrorKind] = None
    clarification: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == ExecutionStatus.ACCEPTED
