from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from routeflow.config import DEFAULT_BEDROCK_ENDPOINT_TEMPLATE
from routeflow.logging import get_logger, log_routing_trace
from routeflow.service.adapters import adapter_name_for
from routeflow.service.catalog import (
    CostUnit,
    ModelCatalog,
    ModelDescriptor,
    is_compatible,
    normalize_task_type,
)
from routeflow.service.errors import NoAvailableModel, ValidationError
from routeflow.service.health import HealthMonitor, HealthRecord
from routeflow.service.schemas import RouteRequest
from routeflow.storage.memory import MemoryTTLCache

logger = get_logger(__name__)

ROUTE_CACHE_PREFIX = "route:"
FALLBACK_COUNT = 2


@dataclass
class RouteDecision:
    route_key: str
    model_id: str
    endpoint: str
    adapter: str
    estimated_cost: float
    fallback_model_ids: List[str] = field(default_factory=list)
    rationale: str = ""
    budget_relaxed: bool = False

    @property
    def candidate_ids(self) -> List[str]:
        """Primary followed by fallbacks, in the order they should be tried."""
        return [self.model_id, *self.fallback_model_ids]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteDecision":
        return cls(
            route_key=data["route_key"],
            model_id=data["model_id"],
            endpoint=data["endpoint"],
            adapter=data["adapter"],
            estimated_cost=float(data["estimated_cost"]),
            fallback_model_ids=list(data.get("fallback_model_ids") or []),
            rationale=data.get("rationale", ""),
            budget_relaxed=bool(data.get("budget_relaxed", False)),
        )


class CostAwareRouter:
    """Pick the cheapest healthy model that satisfies a request's constraints.

    Candidates are narrowed in stages (task, health, quality, latency,
    budget) and the survivors are ordered by ``(unit_cost, id)``. Decisions are
    cached per route key for ``cache_ttl_seconds``; a cached decision is
    returned without consulting the health monitor.

    Thread Safety:
        The catalog is immutable and both caches lock per operation, so
        concurrent ``route`` calls from unrelated executions are safe.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        health_monitor: HealthMonitor,
        *,
        cache: Any = None,
        cache_ttl_seconds: float = 300,
        region: str = "ap-northeast-2",
        endpoint_template: str = DEFAULT_BEDROCK_ENDPOINT_TEMPLATE,
        default_estimated_tokens: int = 1000,
        default_estimated_images: int = 1,
        output_token_ratio: float = 0.3,
    ) -> None:
        self.catalog = catalog
        self.health_monitor = health_monitor
        self.cache = cache if cache is not None else MemoryTTLCache()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.region = region
        self.endpoint_template = endpoint_template
        self.default_estimated_tokens = default_estimated_tokens
        self.default_estimated_images = default_estimated_images
        self.output_token_ratio = output_token_ratio

    @staticmethod
    def _coerce_request(request: Union[RouteRequest, Dict[str, Any]]) -> RouteRequest:
        if isinstance(request, RouteRequest):
            return request
        try:
            return RouteRequest(**request)
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid route request",
                detail={"errors": [err["msg"] for err in exc.errors()]},
            ) from exc

    def _sizes(self, request: RouteRequest) -> tuple[int, int]:
        tokens = (
            request.estimated_tokens
            if request.estimated_tokens is not None
            else self.default_estimated_tokens
        )
        images = (
            request.estimated_images
            if request.estimated_images is not None
            else self.default_estimated_images
        )
        return tokens, images

    def route_key(self, request: Union[RouteRequest, Dict[str, Any]]) -> str:
        request = self._coerce_request(request)
        normalized = normalize_task_type(request.task_type)
        task = normalized.value if normalized else request.task_type
        budget = (
            "unlimited" if request.budget_constraint is None else repr(request.budget_constraint)
        )
        tokens, images = self._sizes(request)
        return "|".join(
            [
                task,
                request.quality_requirement.value,
                request.latency_requirement.value,
                budget,
                str(tokens),
                str(images),
            ]
        )

    def endpoint_for(self, model: ModelDescriptor) -> str:
        return self.endpoint_template.format(region=self.region, model_id=model.id)

    def estimate_cost(
        self, model: ModelDescriptor, request: Union[RouteRequest, Dict[str, Any]]
    ) -> float:
        request = self._coerce_request(request)
        tokens, images = self._sizes(request)
        if model.cost_unit == CostUnit.TOKEN:
            cost = model.unit_cost * tokens
            if model.output_cost_per_unit is not None:
                cost += model.output_cost_per_unit * tokens * self.output_token_ratio
            return cost
        if model.cost_unit == CostUnit.IMAGE:
            return model.unit_cost * images
        return model.unit_cost

    def available_models(self, task_type: Optional[str] = None) -> List[ModelDescriptor]:
        if task_type is None:
            entries = list(self.catalog.entries())
        else:
            entries = self.catalog.for_task(task_type)
        return sorted(
            (entry for entry in entries if entry.available), key=lambda m: m.sort_key
        )

    async def health(self) -> List[HealthRecord]:
        return await self.health_monitor.check_all(self.catalog.entries())

    async def route(self, request: Union[RouteRequest, Dict[str, Any]]) -> RouteDecision:
        request = self._coerce_request(request)
        key = self.route_key(request)
        cached = await self.cache.get(ROUTE_CACHE_PREFIX + key)
        if cached:
            logger.debug("route_cache_hit", route_key=key)
            return RouteDecision.from_dict(cached)

        trace: List[Dict[str, Any]] = []
        normalized = normalize_task_type(request.task_type)
        if normalized is None:
            raise NoAvailableModel(
                f"unknown task type '{request.task_type}'",
                detail={"task_type": request.task_type},
            )

        candidates = [
            entry
            for entry in self.catalog.entries()
            if entry.available and is_compatible(entry, request.task_type, normalized)
        ]
        trace.append({"stage": "task", "survivors": [m.id for m in candidates]})

        healthy: List[ModelDescriptor] = []
        for entry in candidates:
            record = await self.health_monitor.check(entry)
            if record.healthy:
                healthy.append(entry)
        trace.append({"stage": "health", "survivors": [m.id for m in healthy]})
        if not healthy:
            log_routing_trace(trace, logger)
            raise NoAvailableModel(
                f"no healthy model for task '{request.task_type}'",
                detail={
                    "task_type": normalized.value,
                    "candidates": [m.id for m in candidates],
                },
            )
        healthy.sort(key=lambda m: m.sort_key)

        quality_ok = [
            m for m in healthy if m.quality.rank >= request.quality_requirement.rank
        ]
        trace.append({"stage": "quality", "survivors": [m.id for m in quality_ok]})
        latency_ok = [
            m for m in quality_ok if m.latency.rank <= request.latency_requirement.rank
        ]
        trace.append({"stage": "latency", "survivors": [m.id for m in latency_ok]})

        notes: List[str] = []
        budget_relaxed = False
        if not latency_ok:
            # Nothing meets quality and latency: degrade to the cheapest healthy model
            selected = healthy[0]
            notes.append(
                "quality/latency requirements relaxed: no healthy candidate meets "
                f"{request.quality_requirement.value} quality with "
                f"{request.latency_requirement.value} latency"
            )
        elif request.budget_constraint is not None:
            within = [m for m in latency_ok if m.unit_cost <= request.budget_constraint]
            trace.append({"stage": "budget", "survivors": [m.id for m in within]})
            if within:
                selected = within[0]
            else:
                selected = latency_ok[0]
                budget_relaxed = True
                notes.append(
                    f"budget relaxed: no candidate within ${request.budget_constraint} "
                    f"per {selected.cost_unit.value}"
                )
        else:
            selected = latency_ok[0]

        fallbacks = [
            m.id
            for m in healthy
            if m.id != selected.id and m.category == selected.category
        ][:FALLBACK_COUNT]

        rationale_parts = [
            f"Selected {selected.name} for cost optimization "
            f"(${selected.unit_cost} per {selected.cost_unit.value})",
            f"meets {request.quality_requirement.value} quality requirement "
            f"({selected.quality.value} tier)",
            f"satisfies {request.latency_requirement.value} latency requirement "
            f"({selected.latency.value} latency)",
            f"optimized for region ({self.region})",
        ]
        decision = RouteDecision(
            route_key=key,
            model_id=selected.id,
            endpoint=self.endpoint_for(selected),
            adapter=adapter_name_for(selected),
            estimated_cost=self.estimate_cost(selected, request),
            fallback_model_ids=fallbacks,
            rationale="; ".join(rationale_parts + notes),
            budget_relaxed=budget_relaxed,
        )
        trace.append(
            {"stage": "selected", "model_id": selected.id, "fallbacks": fallbacks}
        )
        log_routing_trace(trace, logger)
        logger.info(
            "route_selected",
            route_key=key,
            model_id=selected.id,
            estimated_cost=decision.estimated_cost,
            budget_relaxed=budget_relaxed,
        )
        await self.cache.set(
            ROUTE_CACHE_PREFIX + key, decision.to_dict(), self.cache_ttl_seconds
        )
        return decision
