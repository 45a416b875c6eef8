"""Static model catalog: descriptors, task normalization and defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from routeflow.service.errors import NotFoundError


class TaskType(str, Enum):
    TEXT_GENERATION = "text-generation"
    IMAGE_GENERATION = "image-generation"
    EMBEDDING = "embedding"


class QualityTier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _QUALITY_ORDER.index(self)


class LatencyClass(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _LATENCY_ORDER.index(self)


class CostUnit(str, Enum):
    TOKEN = "token"
    IMAGE = "image"
    CALL = "call"


_QUALITY_ORDER = [QualityTier.BASIC, QualityTier.STANDARD, QualityTier.PREMIUM]
_LATENCY_ORDER = [LatencyClass.LOW, LatencyClass.MEDIUM, LatencyClass.HIGH]


# Caller-facing task names mapped onto catalog categories.
TASK_NORMALIZATION: Dict[str, TaskType] = {
    "sketch-to-image": TaskType.IMAGE_GENERATION,
    "text-to-image": TaskType.IMAGE_GENERATION,
    "image-variation": TaskType.IMAGE_GENERATION,
    "content-creation": TaskType.TEXT_GENERATION,
    "conversation": TaskType.TEXT_GENERATION,
    "summarization": TaskType.TEXT_GENERATION,
    "code-generation": TaskType.TEXT_GENERATION,
    "reasoning": TaskType.TEXT_GENERATION,
    "simple-analysis": TaskType.TEXT_GENERATION,
    "complex-analysis": TaskType.TEXT_GENERATION,
    "semantic-search": TaskType.EMBEDDING,
    "text-embedding": TaskType.EMBEDDING,
    "image-embedding": TaskType.EMBEDDING,
    "similarity-comparison": TaskType.EMBEDDING,
}

# Raw task names each category accepts even without an explicit affinity.
CATEGORY_COMPATIBILITY: Dict[TaskType, FrozenSet[str]] = {
    TaskType.TEXT_GENERATION: frozenset({
        "text-generation", "content-creation", "conversation", "summarization",
        "code-generation", "reasoning", "simple-analysis", "complex-analysis",
    }),
    TaskType.IMAGE_GENERATION: frozenset({
        "image-generation", "text-to-image", "image-variation", "sketch-to-image",
        "inpainting", "outpainting",
    }),
    TaskType.EMBEDDING: frozenset({
        "embedding", "text-embedding", "image-embedding", "semantic-search",
        "similarity-comparison", "multimodal-search", "image-similarity",
    }),
}


def normalize_task_type(raw: Optional[str]) -> Optional[TaskType]:
    """Map a caller task name onto a catalog category, or None if unknown."""
    if not raw:
        return None
    key = str(raw).strip().lower()
    if key in TASK_NORMALIZATION:
        return TASK_NORMALIZATION[key]
    try:
        return TaskType(key)
    except ValueError:
        return None


@dataclass(frozen=True)
class ModelQuota:
    requests_per_minute: int
    tokens_per_minute: Optional[int] = None
    items_per_minute: Optional[int] = None


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    category: TaskType
    task_affinity: FrozenSet[str]
    unit_cost: float
    cost_unit: CostUnit
    quality: QualityTier
    latency: LatencyClass
    quota: ModelQuota
    available: bool = True
    output_cost_per_unit: Optional[float] = None
    provider: str = "bedrock"
    max_tokens: Optional[int] = None
    dimensions: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[float, str]:
        return (self.unit_cost, self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "task_affinity": sorted(self.task_affinity),
            "unit_cost": self.unit_cost,
            "cost_unit": self.cost_unit.value,
            "quality": self.quality.value,
            "latency": self.latency.value,
            "available": self.available,
            "output_cost_per_unit": self.output_cost_per_unit,
        }


def is_compatible(
    descriptor: ModelDescriptor, raw_task: str, normalized: Optional[TaskType]
) -> bool:
    raw = (raw_task or "").strip().lower()
    if raw in descriptor.task_affinity:
        return True
    if normalized is None:
        return False
    if normalized.value in descriptor.task_affinity:
        return True
    if descriptor.category == normalized:
        return True
    return raw in CATEGORY_COMPATIBILITY.get(descriptor.category, frozenset())


class ModelCatalog:
    """Read-only set of model descriptors, loaded once."""

    def __init__(self, entries: Iterable[ModelDescriptor]) -> None:
        items = tuple(entries)
        ids = [entry.id for entry in items]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"duplicate catalog ids: {sorted(duplicates)}")
        self._entries: Tuple[ModelDescriptor, ...] = items
        self._by_id: Dict[str, ModelDescriptor] = {entry.id: entry for entry in items}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._by_id

    def entries(self) -> Tuple[ModelDescriptor, ...]:
        return self._entries

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._by_id.get(model_id)

    def require(self, model_id: str) -> ModelDescriptor:
        descriptor = self._by_id.get(model_id)
        if descriptor is None:
            raise NotFoundError(
                f"model '{model_id}' is not in the catalog", detail={"model_id": model_id}
            )
        return descriptor

    def categories(self) -> List[TaskType]:
        seen: List[TaskType] = []
        for entry in self._entries:
            if entry.category not in seen:
                seen.append(entry.category)
        return seen

    def for_task(self, raw_task: str) -> List[ModelDescriptor]:
        normalized = normalize_task_type(raw_task)
        return [
            entry
            for entry in self._entries
            if is_compatible(entry, raw_task, normalized)
        ]


DEFAULT_CATALOG_ENTRIES: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="anthropic.claude-3-haiku-20240307-v1:0",
        name="Claude 3 Haiku",
        category=TaskType.TEXT_GENERATION,
        task_affinity=frozenset({
            "text-generation", "content-creation", "simple-analysis",
            "conversation", "summarization",
        }),
        unit_cost=0.00000025,
        output_cost_per_unit=0.00000125,
        cost_unit=CostUnit.TOKEN,
        quality=QualityTier.BASIC,
        latency=LatencyClass.LOW,
        quota=ModelQuota(requests_per_minute=100, tokens_per_minute=100_000),
        provider="anthropic",
        max_tokens=200_000,
    ),
    ModelDescriptor(
        id="anthropic.claude-3-5-sonnet-20241022-v2:0",
        name="Claude 3.5 Sonnet",
        category=TaskType.TEXT_GENERATION,
        task_affinity=frozenset({
            "text-generation", "code-generation", "complex-analysis",
            "reasoning", "content-creation",
        }),
        unit_cost=0.000003,
        output_cost_per_unit=0.000015,
        cost_unit=CostUnit.TOKEN,
        quality=QualityTier.PREMIUM,
        latency=LatencyClass.MEDIUM,
        quota=ModelQuota(requests_per_minute=50, tokens_per_minute=40_000),
        provider="anthropic",
        max_tokens=200_000,
    ),
    ModelDescriptor(
        id="amazon.titan-image-generator-v1",
        name="Titan Image Generator G1",
        category=TaskType.IMAGE_GENERATION,
        task_affinity=frozenset({"text-to-image", "image-variation", "sketch-to-image"}),
        unit_cost=0.008,
        cost_unit=CostUnit.IMAGE,
        quality=QualityTier.STANDARD,
        latency=LatencyClass.MEDIUM,
        quota=ModelQuota(requests_per_minute=10, items_per_minute=10),
        provider="amazon",
    ),
    ModelDescriptor(
        id="stability.stable-diffusion-xl-v1",
        name="Stable Diffusion XL",
        category=TaskType.IMAGE_GENERATION,
        task_affinity=frozenset({
            "text-to-image", "image-variation", "inpainting", "outpainting",
        }),
        unit_cost=0.036,
        cost_unit=CostUnit.IMAGE,
        quality=QualityTier.PREMIUM,
        latency=LatencyClass.HIGH,
        quota=ModelQuota(requests_per_minute=5, items_per_minute=5),
        provider="stability",
    ),
    ModelDescriptor(
        id="amazon.titan-embed-text-v1",
        name="Titan Embeddings G1 - Text",
        category=TaskType.EMBEDDING,
        task_affinity=frozenset({
            "text-embedding", "semantic-search", "similarity-comparison",
        }),
        unit_cost=0.0000001,
        cost_unit=CostUnit.TOKEN,
        quality=QualityTier.BASIC,
        latency=LatencyClass.LOW,
        quota=ModelQuota(requests_per_minute=200, tokens_per_minute=500_000),
        provider="amazon",
        dimensions=1536,
    ),
    ModelDescriptor(
        id="amazon.titan-embed-image-v1",
        name="Titan Embeddings G1 - Multimodal",
        category=TaskType.EMBEDDING,
        task_affinity=frozenset({
            "image-embedding", "multimodal-search", "image-similarity",
        }),
        unit_cost=0.0001,
        cost_unit=CostUnit.IMAGE,
        quality=QualityTier.STANDARD,
        latency=LatencyClass.MEDIUM,
        quota=ModelQuota(requests_per_minute=50, items_per_minute=50),
        provider="amazon",
        dimensions=1024,
    ),
)


def default_catalog() -> ModelCatalog:
    return ModelCatalog(DEFAULT_CATALOG_ENTRIES)


__all__ = [
    "TaskType",
    "QualityTier",
    "LatencyClass",
    "CostUnit",
    "ModelQuota",
    "ModelDescriptor",
    "ModelCatalog",
    "TASK_NORMALIZATION",
    "CATEGORY_COMPATIBILITY",
    "DEFAULT_CATALOG_ENTRIES",
    "normalize_task_type",
    "is_compatible",
    "default_catalog",
]
