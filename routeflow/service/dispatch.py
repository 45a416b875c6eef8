from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from routeflow.logging import get_logger
from routeflow.service.adapters import (
    CanonicalRequest,
    CanonicalResponse,
    build_adapter,
    adapter_name_for,
    estimate_tokens,
)
from routeflow.service.budget import BudgetTracker
from routeflow.service.catalog import CostUnit, ModelCatalog, ModelDescriptor
from routeflow.service.errors import AdapterError, AllBackendsExhausted, BudgetExceeded
from routeflow.service.router import CostAwareRouter, RouteDecision
from routeflow.service.schemas import RouteRequest
from routeflow.service.transport import BackendTransport

logger = get_logger(__name__)


@dataclass
class DispatchAttempt:
    model_id: str
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class DispatchResult:
    response: CanonicalResponse
    model_id: str
    cost: float
    decision: RouteDecision
    attempts: List[DispatchAttempt] = field(default_factory=list)


def compute_cost(
    model: ModelDescriptor,
    response: CanonicalResponse,
    request: Optional[CanonicalRequest] = None,
) -> float:
    """Actual cost of a completed call, from the usage the provider reported."""
    if model.cost_unit == CostUnit.TOKEN:
        input_tokens = response.input_tokens
        if input_tokens is None and request is not None:
            input_tokens = estimate_tokens(request.prompt or request.text)
        output_tokens = response.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(response.text)
        cost = (input_tokens or 0) * model.unit_cost
        if model.output_cost_per_unit is not None:
            cost += output_tokens * model.output_cost_per_unit
        return cost
    if model.cost_unit == CostUnit.IMAGE:
        return model.unit_cost * max(response.image_count, 1 if response.embedding else 0)
    return model.unit_cost


class BackendDispatcher:
    """Route a canonical request and execute it with fallback on adapter failure."""

    def __init__(
        self,
        router: CostAwareRouter,
        catalog: ModelCatalog,
        transport: BackendTransport,
        *,
        budget: Optional[BudgetTracker] = None,
    ) -> None:
        self.router = router
        self.catalog = catalog
        self.transport = transport
        self.budget = budget

    async def dispatch(
        self,
        route_request: Union[RouteRequest, Dict[str, Any]],
        canonical_request: CanonicalRequest,
    ) -> DispatchResult:
        decision = await self.router.route(route_request)

        if self.budget is not None:
            check = self.budget.check(decision.estimated_cost)
            if not check.allowed:
                logger.warning(
                    "dispatch_budget_exceeded",
                    model_id=decision.model_id,
                    estimated_cost=decision.estimated_cost,
                    reason=check.reason,
                )
                raise BudgetExceeded(
                    check.reason or "budget exceeded",
                    detail={
                        "model_id": decision.model_id,
                        "estimated_cost": decision.estimated_cost,
                    },
                )

        attempts: List[DispatchAttempt] = []
        for model_id in decision.candidate_ids:
            model = self.catalog.require(model_id)
            adapter = build_adapter(adapter_name_for(model), self.transport)
            request = canonical_request.for_model(model_id)
            try:
                response = await adapter.invoke(request)
            except AdapterError as exc:
                attempts.append(
                    DispatchAttempt(
                        model_id=model_id,
                        success=False,
                        error_code=exc.error_code,
                        error_message=exc.message,
                    )
                )
                logger.warning(
                    "dispatch_backend_failed",
                    model_id=model_id,
                    error_code=exc.error_code,
                    remaining=len(decision.candidate_ids) - len(attempts),
                )
                continue

            attempts.append(DispatchAttempt(model_id=model_id, success=True))
            cost = compute_cost(model, response, request)
            if self.budget is not None:
                self.budget.record(cost, model.category.value)
            logger.info(
                "dispatch_succeeded",
                model_id=model_id,
                cost=cost,
                attempts=len(attempts),
                duration_ms=response.duration_ms,
            )
            return DispatchResult(
                response=response,
                model_id=model_id,
                cost=cost,
                decision=decision,
                attempts=attempts,
            )

        raise AllBackendsExhausted(
            f"all {len(attempts)} backends failed for route '{decision.route_key}'",
            detail={
                "route_key": decision.route_key,
                "attempts": [
                    {"model_id": a.model_id, "error_code": a.error_code, "message": a.error_message}
                    for a in attempts
                ],
            },
        )
