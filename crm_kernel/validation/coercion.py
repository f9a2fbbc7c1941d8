"""
Schema-driven decoding of model-supplied parameters.

The raw payload is never trusted structurally: only names declared in the
ParameterSchema are read, each value is validated against its declared
primitive type in pydantic's lax mode, and everything else is dropped.
"""

import logging
import re
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple

from pydantic import BeforeValidator, ConfigDict, TypeAdapter, ValidationError

from crm_kernel.models.action import Violation
from crm_kernel.models.schema import ParameterSchema, ParameterSpec, ParamType

logger = logging.getLogger(__name__)

STAGE = "schema"

_LAX = ConfigDict(
    allow_inf_nan=False,
    coerce_numbers_to_str=True,
    str_strip_whitespace=True,
)


def _clean_numeric(value: Any) -> Any:
    """Strip currency and digit-grouping noise; refuse booleans posing as numbers."""
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, str):
        text = value.strip().replace(",", "").replace("_", "")
        if text.startswith("$"):
            text = text[1:]
        return text.strip()
    return value


def _finite_float(value: Any) -> Any:
    value = _clean_numeric(value)
    if isinstance(value, int):
        try:
            return float(value)
        except OverflowError:
            raise ValueError("number is too large") from None
    return value


def normalize_enum_value(value: Any) -> Any:
    """Lowercase, with runs of spaces and hyphens collapsed to underscores."""
    if not isinstance(value, str):
        return value
    return re.sub(r"[\s\-]+", "_", value.strip().lower())


_NUMBER = Annotated[float, BeforeValidator(_finite_float)]
_INTEGER = Annotated[int, BeforeValidator(_clean_numeric)]

_TYPES = {
    ParamType.STRING: str,
    ParamType.NUMBER: _NUMBER,
    ParamType.INTEGER: _INTEGER,
    ParamType.BOOLEAN: bool,
}


@lru_cache(maxsize=None)
def _adapter(param_type: ParamType, enum_values: Optional[Tuple[str, ...]] = None) -> TypeAdapter:
    if param_type == ParamType.ENUM:
        target = Annotated[Literal[enum_values], BeforeValidator(normalize_enum_value)]
    else:
        target = _TYPES[param_type]
    return TypeAdapter(target, config=_LAX)


def coerce_value(spec: ParameterSpec, value: Any) -> Any:
    """Validate one value against its spec. Raises pydantic's ValidationError."""
    enum_values = tuple(spec.enum_values or ()) if spec.type == ParamType.ENUM else None
    return _adapter(spec.type, enum_values).validate_python(value)


def _describe(error: ValidationError) -> str:
    return "; ".join(e["msg"] for e in error.errors())


def decode_parameters(
    schema: ParameterSchema, raw: Any
) -> Tuple[Dict[str, Any], List[Violation]]:
    """
    Decode a raw payload against a schema.

    Returns the normalized parameters (defaults filled) and the schema
    violations found, in declaration order. Required references that can
    be resolved later by the reference stage are not reported missing here.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        return {}, [Violation(
            stage=STAGE,
            field=None,
            rule="malformed_parameters",
            message=f"Parameters must be an object, got {type(raw).__name__}",
        )]

    params: Dict[str, Any] = {}
    violations: List[Violation] = []

    for spec in schema.parameters:
        value = raw.get(spec.name)
        if value is None:
            if spec.required and not spec.resolve_from_context:
                violations.append(Violation(
                    stage=STAGE,
                    field=spec.name,
                    rule="missing_required",
                    message=f"'{spec.name}' is required for {schema.kind}",
                ))
            elif spec.default is not None:
                params[spec.name] = spec.default
            continue

        try:
            params[spec.name] = coerce_value(spec, value)
        except ValidationError as e:
            violations.append(Violation(
                stage=STAGE,
                field=spec.name,
                rule="invalid_enum" if spec.type == ParamType.ENUM else "invalid_type",
                message=f"'{spec.name}': {_describe(e)}",
            ))

    declared = set(schema.parameter_names)
    dropped = sorted(str(k) for k in raw if k not in declared)
    if dropped:
        logger.debug(
            "Dropped undeclared parameters %s for %s", dropped, schema.kind,
            extra={"kind": schema.kind},
        )

    return params, violations
