"""Parameter schemas for every permitted action kind."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict


class EntityType(str, Enum):
    CONTACT = "contact"
    DEAL = "deal"


class ParamType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ENUM = "enum"


class ParameterSpec(BaseModel):
    """A single declared parameter of an action kind."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParamType
    required: bool = False
    enum_values: Optional[List[str]] = None
    default: Any = None
    reference: Optional[EntityType] = None      # Foreign identifier of this entity type
    resolve_from_context: bool = False          # May be filled from conversation context
    control: bool = False                       # Steers execution, never stored on the entity
    description: str = ""


class ParameterSchema(BaseModel):
    """
    Registry entry for one action kind.

    `target` names the parameter identifying the entity being mutated;
    creating kinds have no target and mint a new entity id instead.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    entity_type: EntityType
    event_kind: str
    description: str
    parameters: List[ParameterSpec]
    target: Optional[str] = None

    @property
    def creates_entity(self) -> bool:
        return self.target is None

    @property
    def parameter_names(self) -> List[str]:
        return [p.name for p in self.parameters]

    def get(self, name: str) -> Optional[ParameterSpec]:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None
