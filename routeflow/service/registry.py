"""Agent registry: step type name -> (factory, config schema).

Validation is an explicit pass over a small schema struct that returns a
``ValidationResult``; the registry raises only at the ``create`` boundary.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from routeflow.logging import get_logger
from routeflow.service.errors import InvalidAgentConfig, UnknownAgentType

logger = get_logger(__name__)

PRIMITIVE_TYPES = ("string", "number", "boolean", "object", "array")


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, (list, tuple))
    # Non-primitive declarations are not checked
    return True


@dataclass(frozen=True)
class FieldSpec:
    type: str
    description: str = ""


@dataclass(frozen=True)
class ConfigSchema:
    type_name: str
    properties: Dict[str, FieldSpec] = field(default_factory=dict)
    required: tuple = ()
    description: str = ""
    allow_extra: bool = True

    def to_json_schema(self) -> Dict[str, Any]:
        return {
            "title": self.type_name,
            "description": self.description,
            "type": "object",
            "properties": {
                name: {"type": spec.type, "description": spec.description}
                for name, spec in self.properties.items()
            },
            "required": list(self.required),
            "additionalProperties": self.allow_extra,
        }


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


@dataclass
class ValidationResult:
    valid: bool
    errors: List[FieldError] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        return [error.message for error in self.errors]


def validate_config(schema: ConfigSchema, config: Optional[Dict[str, Any]]) -> ValidationResult:
    config = config or {}
    errors: List[FieldError] = []
    for name in schema.required:
        if name not in config or config[name] is None:
            errors.append(
                FieldError(
                    name,
                    f"Missing required field '{name}' for agent type '{schema.type_name}'",
                )
            )
    for name, value in config.items():
        spec = schema.properties.get(name)
        if spec is None:
            if not schema.allow_extra:
                errors.append(
                    FieldError(
                        name,
                        f"Unknown field '{name}' for agent type '{schema.type_name}'",
                    )
                )
            continue
        if value is None:
            continue
        if not _matches_type(value, spec.type):
            errors.append(
                FieldError(
                    name,
                    f"Field '{name}' for agent type '{schema.type_name}' must be "
                    f"of type {spec.type}, got {type(value).__name__}",
                )
            )
    return ValidationResult(valid=not errors, errors=errors)


@dataclass
class AgentContext:
    execution_id: str
    node_id: str
    state: Dict[str, Any]
    config: Dict[str, Any]
    previous_outputs: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResult:
    success: bool
    output: Any = None
    cost: float = 0.0
    duration_ms: float = 0.0
    tokens_used: int = 0
    images_generated: int = 0
    embeddings_created: int = 0
    model_used: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    recoverable: bool = False

    @classmethod
    def failure(
        cls, message: str, *, code: str = "node_execution_failed", recoverable: bool = False
    ) -> "AgentResult":
        return cls(
            success=False,
            error_code=code,
            error_message=message,
            recoverable=recoverable,
        )


class Executable(Protocol):
    async def execute(self, context: AgentContext) -> AgentResult:
        ...


AgentFactory = Callable[[Dict[str, Any]], Executable]


@dataclass(frozen=True)
class _Registration:
    factory: AgentFactory
    schema: ConfigSchema


class AgentRegistry:
    """Open table of step types available to workflow nodes."""

    def __init__(self) -> None:
        self._types: Dict[str, _Registration] = {}
        self._lock = threading.Lock()

    def register(self, type_name: str, factory: AgentFactory, schema: ConfigSchema) -> None:
        with self._lock:
            if type_name in self._types:
                logger.info("agent_type_replaced", type_name=type_name)
            self._types[type_name] = _Registration(factory=factory, schema=schema)

    def available_types(self) -> List[str]:
        with self._lock:
            return sorted(self._types)

    def _registration(self, type_name: str) -> _Registration:
        with self._lock:
            registration = self._types.get(type_name)
        if registration is None:
            raise UnknownAgentType(
                f"Unknown agent type '{type_name}'",
                detail={"type_name": type_name, "available": self.available_types()},
            )
        return registration

    def schema_for(self, type_name: str) -> ConfigSchema:
        return self._registration(type_name).schema

    def validate(self, type_name: str, config: Optional[Dict[str, Any]]) -> ValidationResult:
        return validate_config(self.schema_for(type_name), config)

    def create(self, type_name: str, config: Optional[Dict[str, Any]]) -> Executable:
        registration = self._registration(type_name)
        result = validate_config(registration.schema, config)
        if not result.valid:
            first = result.errors[0]
            raise InvalidAgentConfig(
                first.message,
                detail={
                    "type_name": type_name,
                    "field": first.field,
                    "errors": result.messages,
                },
            )
        return registration.factory(dict(config or {}))
