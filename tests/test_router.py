from dataclasses import replace

import pytest

from routeflow.service.catalog import DEFAULT_CATALOG_ENTRIES, ModelCatalog, default_catalog
from routeflow.service.errors import NoAvailableModel, ValidationError
from routeflow.service.health import HealthMonitor, HealthRecord, HealthStatus, catalog_probe
from routeflow.service.router import CostAwareRouter, RouteDecision
from routeflow.service.schemas import RouteRequest
from routeflow.storage.memory import MemoryTTLCache

HAIKU = "anthropic.claude-3-haiku-20240307-v1:0"
SONNET = "anthropic.claude-3-5-sonnet-20241022-v2:0"
TITAN_IMAGE = "amazon.titan-image-generator-v1"
SDXL = "stability.stable-diffusion-xl-v1"
TITAN_EMBED = "amazon.titan-embed-text-v1"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class SelectiveProbe:
    """Reports the listed models as unavailable, everything else via the catalog."""

    def __init__(self, down=()):
        self.down = set(down)
        self.calls = 0

    async def __call__(self, model):
        self.calls += 1
        if model.id in self.down:
            return HealthRecord(model.id, HealthStatus.UNAVAILABLE, 0.0, 1.0, 0.0, 0.0)
        return await catalog_probe(model)


def make_router(probe=None, catalog=None, cache=None):
    catalog = catalog or default_catalog()
    monitor = HealthMonitor(probe or SelectiveProbe())
    return CostAwareRouter(catalog, monitor, cache=cache)


@pytest.mark.asyncio
async def test_cheap_text_request_routes_to_basic_model():
    router = make_router()

    decision = await router.route(
        {"task_type": "text-generation", "quality_requirement": "basic", "latency_requirement": "low"}
    )

    assert decision.model_id == HAIKU
    assert decision.adapter == "anthropic_claude"
    assert decision.endpoint == (
        "https://bedrock-runtime.ap-northeast-2.amazonaws.com/model/" + HAIKU + "/invoke"
    )
    assert decision.fallback_model_ids == [SONNET]
    assert decision.rationale.startswith("Selected Claude 3 Haiku for cost optimization")
    assert "optimized for region (ap-northeast-2)" in decision.rationale


@pytest.mark.asyncio
async def test_premium_request_skips_cheaper_basic_model():
    router = make_router()

    decision = await router.route(
        RouteRequest(task_type="complex-analysis", quality_requirement="premium")
    )

    assert decision.model_id == SONNET
    assert "meets premium quality requirement" in decision.rationale


@pytest.mark.asyncio
async def test_image_request_picks_cheapest_image_model():
    router = make_router()

    decision = await router.route({"task_type": "text-to-image", "latency_requirement": "high"})

    assert decision.model_id == TITAN_IMAGE
    assert decision.adapter == "titan_image"
    assert decision.fallback_model_ids == [SDXL]
    assert decision.estimated_cost == pytest.approx(0.008)


@pytest.mark.asyncio
async def test_embedding_request():
    router = make_router()

    decision = await router.route({"task_type": "semantic-search", "quality_requirement": "basic"})

    assert decision.model_id == TITAN_EMBED
    assert decision.adapter == "titan_embedding"


@pytest.mark.asyncio
async def test_unhealthy_primary_is_skipped():
    router = make_router(SelectiveProbe(down={HAIKU}))

    decision = await router.route({"task_type": "conversation", "quality_requirement": "basic"})

    assert decision.model_id == SONNET
    assert decision.fallback_model_ids == []


@pytest.mark.asyncio
async def test_no_healthy_model_raises():
    router = make_router(SelectiveProbe(down={TITAN_IMAGE, SDXL}))

    with pytest.raises(NoAvailableModel):
        await router.route({"task_type": "text-to-image"})


@pytest.mark.asyncio
async def test_unknown_task_type_raises():
    with pytest.raises(NoAvailableModel):
        await make_router().route({"task_type": "telepathy"})


@pytest.mark.asyncio
async def test_invalid_request_is_a_validation_error():
    with pytest.raises(ValidationError):
        await make_router().route({"task_type": "text-generation", "budget_constraint": -1})


@pytest.mark.asyncio
async def test_unavailable_catalog_entries_are_never_candidates():
    entries = [
        replace(entry, available=False) if entry.id == HAIKU else entry
        for entry in DEFAULT_CATALOG_ENTRIES
    ]
    router = make_router(catalog=ModelCatalog(entries))

    decision = await router.route({"task_type": "text-generation", "quality_requirement": "basic"})

    assert decision.model_id == SONNET


@pytest.mark.asyncio
async def test_budget_constraint_filters_then_relaxes():
    router = make_router()

    within = await router.route(
        {"task_type": "text-to-image", "latency_requirement": "high", "budget_constraint": 0.01}
    )
    assert within.model_id == TITAN_IMAGE
    assert within.budget_relaxed is False

    relaxed = await router.route(
        {"task_type": "text-to-image", "latency_requirement": "high", "budget_constraint": 0.001}
    )
    assert relaxed.model_id == TITAN_IMAGE
    assert relaxed.budget_relaxed is True
    assert "budget relaxed" in relaxed.rationale


@pytest.mark.asyncio
async def test_unsatisfiable_quality_degrades_to_cheapest_healthy():
    router = make_router(SelectiveProbe(down={SONNET}))

    decision = await router.route(
        {"task_type": "reasoning", "quality_requirement": "premium", "latency_requirement": "low"}
    )

    assert decision.model_id == HAIKU
    assert "requirements relaxed" in decision.rationale


@pytest.mark.asyncio
async def test_identical_requests_hit_the_cache_without_reprobing():
    probe = SelectiveProbe()
    router = make_router(probe)
    request = {"task_type": "summarization", "quality_requirement": "basic"}

    first = await router.route(request)
    probes_after_first = probe.calls
    second = await router.route(request)

    assert second == first
    assert probe.calls == probes_after_first


@pytest.mark.asyncio
async def test_cached_decision_expires_after_ttl():
    clock = FakeClock()
    probe = SelectiveProbe()
    router = CostAwareRouter(
        default_catalog(),
        HealthMonitor(probe, stale_seconds=1, clock=clock),
        cache=MemoryTTLCache(clock=clock),
        cache_ttl_seconds=300,
    )
    request = {"task_type": "summarization", "quality_requirement": "basic"}

    await router.route(request)
    calls = probe.calls
    clock.now = 301
    await router.route(request)

    assert probe.calls > calls


def test_route_key_includes_every_constraint():
    router = make_router()

    key = router.route_key(
        {"task_type": "Text-To-Image", "budget_constraint": 0.01, "estimated_images": 2}
    )

    assert key == "image-generation|standard|medium|0.01|1000|2"
    assert router.route_key({"task_type": "embedding"}).split("|")[3] == "unlimited"


def test_estimate_cost_includes_expected_output_tokens():
    router = make_router()
    haiku = default_catalog().require(HAIKU)

    cost = router.estimate_cost(haiku, {"task_type": "text-generation", "estimated_tokens": 1000})

    assert cost == pytest.approx(1000 * 0.00000025 + 1000 * 0.3 * 0.00000125)


def test_available_models_sorted_by_cost():
    ids = [m.id for m in make_router().available_models("text-generation")]
    assert ids == [HAIKU, SONNET]


def test_decision_round_trips_through_dict():
    decision = RouteDecision(
        route_key="k",
        model_id=HAIKU,
        endpoint="e",
        adapter="anthropic_claude",
        estimated_cost=0.1,
        fallback_model_ids=[SONNET],
    )
    assert RouteDecision.from_dict(decision.to_dict()) == decision
    assert decision.candidate_ids == [HAIKU, SONNET]
