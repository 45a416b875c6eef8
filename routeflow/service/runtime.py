from __future__ import annotations

import asyncio
import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from routeflow.config import (
    BackendTransportMode,
    Settings,
    get_settings,
    reset_settings_cache,
)
from routeflow.logging import get_logger
from routeflow.service.agents import register_builtin_agents
from routeflow.service.budget import BudgetLimits, BudgetTracker
from routeflow.service.catalog import ModelCatalog, default_catalog
from routeflow.service.dispatch import BackendDispatcher
from routeflow.service.health import HealthMonitor
from routeflow.service.registry import AgentRegistry
from routeflow.service.router import CostAwareRouter
from routeflow.service.transport import BedrockTransport, StubTransport
from routeflow.service.workflow import WorkflowEngine
from routeflow.storage.memory import MemoryTTLCache
from routeflow.storage.redis_cache import RedisTTLCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires the catalog, router, dispatcher, registry and engine together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        catalog: Optional[ModelCatalog] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            backend_transport=self.settings.backend_transport.value,
            test_mode=self.settings.test_mode,
        )

        self.cache: Any = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisTTLCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
        if self.cache is None:
            if self.settings.redis_url:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_unreachable",
                    message="route decisions and workflow summaries are cached in-memory only",
                )
            self.cache = MemoryTTLCache()

        self.catalog = catalog or default_catalog()
        self.health_monitor = HealthMonitor(stale_seconds=self.settings.health_stale_seconds)
        self.router = CostAwareRouter(
            self.catalog,
            self.health_monitor,
            cache=self.cache,
            cache_ttl_seconds=self.settings.route_cache_ttl_seconds,
            region=self.settings.bedrock_region,
            endpoint_template=self.settings.bedrock_endpoint_template,
            default_estimated_tokens=self.settings.default_estimated_tokens,
            default_estimated_images=self.settings.default_estimated_images,
            output_token_ratio=self.settings.output_token_ratio,
        )

        if self.settings.backend_transport == BackendTransportMode.BEDROCK:
            self.transport = BedrockTransport(
                region=self.settings.bedrock_region,
                endpoint_template=self.settings.bedrock_endpoint_template,
                api_key=self.settings.bedrock_api_key,
                timeout_seconds=self.settings.request_timeout_seconds,
            )
        else:
            self.transport = StubTransport()

        self.budget = BudgetTracker(
            BudgetLimits(
                daily=self.settings.budget_daily_limit,
                monthly=self.settings.budget_monthly_limit,
                per_request=self.settings.budget_per_request_limit,
                alert_threshold_pct=self.settings.budget_alert_threshold_pct,
            )
        )
        self.dispatcher = BackendDispatcher(
            self.router, self.catalog, self.transport, budget=self.budget
        )
        self.registry = register_builtin_agents(AgentRegistry(), self.dispatcher)
        self.engine = WorkflowEngine(self.registry, cache=self.cache, settings=self.settings)
        logger.info(
            "runtime_init_completed",
            models=len(self.catalog),
            agent_types=self.registry.available_types(),
            cache=type(self.cache).__name__,
        )

    async def close(self) -> None:
        close_transport = getattr(self.transport, "close", None)
        if close_transport is not None:
            await close_transport()
        await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisTTLCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
