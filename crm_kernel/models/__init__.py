"""CRM Kernel data models."""

from crm_kernel.models.action import (
    CandidateAction,
    Origin,
    ValidatedAction,
    ValidationResult,
    Violation,
)
from crm_kernel.models.config import KernelConfig
from crm_kernel.models.context import ConversationContext
from crm_kernel.models.entity import Entity
from crm_kernel.models.event import Event
from crm_kernel.models.execution import ExecutionResult, ExecutionStatus
from crm_kernel.models.schema import (
    EntityType,
    ParameterSchema,
    ParameterSpec,
    ParamType,
)

__all__ = [
    "CandidateAction",
    "ConversationContext",
    "Entity",
    "EntityType",
    "Event",
    "ExecutionResult",
    "ExecutionStatus",
    "KernelConfig",
    "Origin",
    "ParameterSchema",
    "ParameterSpec",
    "ParamType",
    "ValidatedAction",
    "ValidationResult",
    "Violation",
]
