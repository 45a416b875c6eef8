from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from routeflow.service.catalog import LatencyClass, QualityTier

# Maximum nested JSON depth accepted in workflow payloads
MAX_JSON_DEPTH = 20
# Maximum array items accepted in workflow payloads
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject payloads nested deeper than ``max_depth`` or with oversized arrays.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class RouteRequest(BaseModel):
    """Shape of a routing request handed to ``CostAwareRouter.route``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    task_type: str = Field(..., min_length=1, max_length=128)
    quality_requirement: QualityTier = QualityTier.STANDARD
    latency_requirement: LatencyClass = LatencyClass.MEDIUM
    budget_constraint: Optional[float] = Field(
        default=None, ge=0, description="Maximum acceptable unit cost"
    )
    estimated_tokens: Optional[int] = Field(default=None, ge=0)
    estimated_images: Optional[int] = Field(default=None, ge=0)

    @field_validator("task_type")
    @classmethod
    def _normalize_task(cls, value: str) -> str:
        return value.strip().lower()


class WorkflowSubmission(BaseModel):
    """Input accepted alongside a workflow definition at submission time."""

    model_config = ConfigDict(extra="forbid")

    payload: dict = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    metadata: dict = Field(default_factory=dict)

    @field_validator("payload", "metadata")
    @classmethod
    def _validate_nested(cls, value: dict) -> dict:
        _validate_json_depth(value)
        return value
