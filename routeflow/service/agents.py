from __future__ import annotations

import functools
import time
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from routeflow.logging import get_logger
from routeflow.service.adapters import CanonicalRequest
from routeflow.service.catalog import LatencyClass, QualityTier
from routeflow.service.dispatch import BackendDispatcher, DispatchResult
from routeflow.service.errors import RouteflowError
from routeflow.service.registry import (
    AgentContext,
    AgentRegistry,
    AgentResult,
    ConfigSchema,
    FieldSpec,
)
from routeflow.service.schemas import RouteRequest
from routeflow.service.templating import interpolate_template, resolve_path

logger = get_logger(__name__)

# cost_priority -> (minimum quality, maximum latency) handed to the router
COST_PRIORITY_PROFILES: Dict[str, Tuple[QualityTier, LatencyClass]] = {
    "cost": (QualityTier.BASIC, LatencyClass.HIGH),
    "quality": (QualityTier.PREMIUM, LatencyClass.HIGH),
    "speed": (QualityTier.BASIC, LatencyClass.LOW),
}

ANALYSIS_INSTRUCTIONS = {
    "sentiment": "Provide sentiment analysis (positive/negative/neutral) and confidence score.",
    "keywords": "Extract the top 10 keywords and key phrases.",
    "summary": "Provide a concise summary in 2-3 sentences.",
    "general": "Provide general analysis including sentiment, key topics, and summary.",
}

_ROUTING_FIELDS = {
    "cost_priority": FieldSpec("string", "cost, quality or speed"),
    "quality_requirement": FieldSpec("string", "basic, standard or premium"),
    "latency_requirement": FieldSpec("string", "low, medium or high"),
    "budget_constraint": FieldSpec("number", "maximum unit cost"),
}


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class DispatchingAgent:
    """Base for agents that send one request through the router/adapter chain."""

    task_type = "text-generation"
    default_cost_priority = "cost"

    def __init__(self, config: Dict[str, Any], *, dispatcher: BackendDispatcher) -> None:
        self.config = config
        self.dispatcher = dispatcher

    def route_request(self, config: Dict[str, Any], **sizes: Any) -> RouteRequest:
        priority = str(config.get("cost_priority") or self.default_cost_priority).lower()
        quality, latency = COST_PRIORITY_PROFILES.get(
            priority, COST_PRIORITY_PROFILES[self.default_cost_priority]
        )
        return RouteRequest(
            task_type=str(config.get("task_type") or self.task_type),
            quality_requirement=config.get("quality_requirement") or quality,
            latency_requirement=config.get("latency_requirement") or latency,
            budget_constraint=config.get("budget_constraint"),
            **sizes,
        )

    def build(self, config: Dict[str, Any]) -> Tuple[RouteRequest, CanonicalRequest]:
        raise NotImplementedError

    def to_output(self, dispatched: DispatchResult, config: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def execute(self, context: AgentContext) -> AgentResult:
        started = time.perf_counter()
        config = interpolate_template(self.config, context.state)
        try:
            route_request, canonical = self.build(config)
            dispatched = await self.dispatcher.dispatch(route_request, canonical)
        except RouteflowError as exc:
            logger.warning(
                "agent_dispatch_failed",
                node_id=context.node_id,
                agent=type(self).__name__,
                error_code=exc.error_code,
                recoverable=exc.recoverable,
            )
            return AgentResult(
                success=False,
                duration_ms=_elapsed_ms(started),
                error_code=exc.error_code,
                error_message=exc.message,
                recoverable=exc.recoverable,
            )
        except PydanticValidationError as exc:
            return AgentResult.failure(
                f"invalid routing options: {exc.errors()[0]['msg']}",
                code="invalid_agent_config",
                recoverable=False,
            )
        response = dispatched.response
        return AgentResult(
            success=True,
            output=self.to_output(dispatched, config),
            cost=dispatched.cost,
            duration_ms=_elapsed_ms(started),
            tokens_used=response.total_tokens,
            images_generated=response.image_count,
            embeddings_created=1 if response.embedding is not None else 0,
            model_used=dispatched.model_id,
        )


class TextGeneratorAgent(DispatchingAgent):
    def build(self, config):
        max_tokens = int(config.get("max_tokens") or 2000)
        canonical = CanonicalRequest(
            task_type=self.task_type,
            prompt=str(config["prompt"]),
            system_prompt=config.get("system_prompt"),
            max_tokens=max_tokens,
            temperature=config.get("temperature", 0.7),
        )
        return self.route_request(config, estimated_tokens=max_tokens), canonical

    def to_output(self, dispatched, config):
        response = dispatched.response
        return {
            "text": response.text,
            "metadata": {
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
                "model_used": dispatched.model_id,
            },
        }


class ImageGeneratorAgent(DispatchingAgent):
    task_type = "text-to-image"

    def build(self, config):
        canonical = CanonicalRequest(
            task_type=self.task_type,
            prompt=str(config["prompt"]),
            negative_prompt=config.get("negative_prompt"),
            width=int(config.get("width") or 1024),
            height=int(config.get("height") or 1024),
            style=config.get("style") or "cartoon",
            quality=config.get("quality") or "standard",
            seed=config.get("seed"),
        )
        return self.route_request(config, estimated_images=1), canonical

    def to_output(self, dispatched, config):
        response = dispatched.response
        return {
            "images": list(response.images),
            "metadata": {
                "model_used": dispatched.model_id,
                "style": config.get("style") or "cartoon",
                "finish_reason": response.finish_reason,
            },
        }


class EmbeddingGeneratorAgent(DispatchingAgent):
    task_type = "text-embedding"

    def build(self, config):
        text = str(config["text"])
        canonical = CanonicalRequest(
            task_type=self.task_type,
            text=text,
            input_type=config.get("input_type") or "search_document",
            normalize=config.get("normalize") is not False,
            dimensions=config.get("dimensions"),
        )
        return self.route_request(config, estimated_tokens=max(1, len(text) // 4)), canonical

    def to_output(self, dispatched, config):
        embedding = dispatched.response.embedding or []
        return {"embedding": embedding, "dimensions": len(embedding)}


class ContentAnalyzerAgent(DispatchingAgent):
    def build(self, config):
        content = str(config["content"])
        analysis_type = config.get("analysis_type") or "general"
        instruction = ANALYSIS_INSTRUCTIONS.get(analysis_type, ANALYSIS_INSTRUCTIONS["general"])
        canonical = CanonicalRequest(
            task_type=self.task_type,
            prompt=f'Analyze the following content: "{content}"\n\n{instruction}',
            max_tokens=1000,
            temperature=0.3,
        )
        return self.route_request(config, estimated_tokens=1000), canonical

    def to_output(self, dispatched, config):
        text = dispatched.response.text or ""
        return {
            "analysis": {"summary": text[:200], "full_analysis": text},
            "original_content": config["content"],
            "analysis_type": config.get("analysis_type") or "general",
        }


class PromptEnhancerAgent(DispatchingAgent):
    def build(self, config):
        base_prompt = str(config["base_prompt"])
        style = config.get("style") or "general"
        focus = config.get("enhancement_type") or "clarity"
        lines = [
            "Enhance the following prompt for better AI model performance:",
            "",
            f'Original prompt: "{base_prompt}"',
            "",
            "Enhancement requirements:",
            f"- Style: {style}",
            f"- Focus: {focus}",
        ]
        if config.get("target_audience"):
            lines.append(f"- Target audience: {config['target_audience']}")
        lines += [
            "- Make it more specific and actionable",
            "- Add relevant context and constraints",
            "",
            "Enhanced prompt:",
        ]
        canonical = CanonicalRequest(
            task_type=self.task_type,
            prompt="\n".join(lines),
            max_tokens=500,
            temperature=0.7,
        )
        return self.route_request(config, estimated_tokens=500), canonical

    def to_output(self, dispatched, config):
        return {
            "original_prompt": config["base_prompt"],
            "enhanced_prompt": (dispatched.response.text or "").strip(),
            "style": config.get("style") or "general",
            "enhancement_type": config.get("enhancement_type") or "clarity",
        }


class TemplateTool:
    """Render a template against shared state without calling a backend."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def execute(self, context: AgentContext) -> AgentResult:
        rendered = interpolate_template(self.config["template"], context.state)
        return AgentResult(success=True, output={"text": rendered})


class HumanInputTool:
    """Read an answer a person supplied ahead of time.

    The answer is looked up in shared state under ``answer_key``; a configured
    ``default`` is used otherwise. With neither, the node fails and is not
    retried.
    """

    def __init__(self, config: Dict[str, Any]) -> None:
        self.config = config

    async def execute(self, context: AgentContext) -> AgentResult:
        key = self.config.get("answer_key") or f"{context.node_id}_answer"
        answer = resolve_path(context.state, key)
        if answer is None:
            answer = self.config.get("default")
        if answer is None:
            return AgentResult.failure(
                f"human input required: {self.config.get('prompt', key)}",
                code="human_input_required",
            )
        return AgentResult(success=True, output={"answer": answer})


TEXT_GENERATOR_SCHEMA = ConfigSchema(
    type_name="text-generator",
    description="Generates text content using AI models",
    properties={
        "prompt": FieldSpec("string", "prompt template"),
        "max_tokens": FieldSpec("number"),
        "temperature": FieldSpec("number"),
        "system_prompt": FieldSpec("string"),
        **_ROUTING_FIELDS,
    },
    required=("prompt",),
)

IMAGE_GENERATOR_SCHEMA = ConfigSchema(
    type_name="image-generator",
    description="Generates images from text prompts",
    properties={
        "prompt": FieldSpec("string", "prompt template"),
        "negative_prompt": FieldSpec("string"),
        "width": FieldSpec("number"),
        "height": FieldSpec("number"),
        "style": FieldSpec("string", "cartoon, realistic, anime, meme or illustration"),
        "quality": FieldSpec("string", "standard or premium"),
        "seed": FieldSpec("number"),
        **_ROUTING_FIELDS,
    },
    required=("prompt",),
)

EMBEDDING_GENERATOR_SCHEMA = ConfigSchema(
    type_name="embedding-generator",
    description="Generates embeddings for text content",
    properties={
        "text": FieldSpec("string", "text template"),
        "input_type": FieldSpec("string"),
        "normalize": FieldSpec("boolean"),
        "dimensions": FieldSpec("number"),
        **_ROUTING_FIELDS,
    },
    required=("text",),
)

CONTENT_ANALYZER_SCHEMA = ConfigSchema(
    type_name="content-analyzer",
    description="Analyzes content for sentiment, keywords, and insights",
    properties={
        "content": FieldSpec("string", "content template"),
        "analysis_type": FieldSpec("string", "sentiment, keywords, summary or general"),
        **_ROUTING_FIELDS,
    },
    required=("content",),
)

PROMPT_ENHANCER_SCHEMA = ConfigSchema(
    type_name="prompt-enhancer",
    description="Enhances prompts for better AI model performance",
    properties={
        "base_prompt": FieldSpec("string", "prompt template"),
        "style": FieldSpec("string"),
        "enhancement_type": FieldSpec("string"),
        "target_audience": FieldSpec("string"),
        **_ROUTING_FIELDS,
    },
    required=("base_prompt",),
)

TEMPLATE_SCHEMA = ConfigSchema(
    type_name="template",
    description="Renders a template against workflow state",
    properties={"template": FieldSpec("string")},
    required=("template",),
)

HUMAN_INPUT_SCHEMA = ConfigSchema(
    type_name="human-input",
    description="Reads a pre-supplied human answer from workflow state",
    properties={
        "prompt": FieldSpec("string"),
        "answer_key": FieldSpec("string"),
    },
)


def register_builtin_agents(
    registry: AgentRegistry, dispatcher: Optional[BackendDispatcher]
) -> AgentRegistry:
    registry.register("template", TemplateTool, TEMPLATE_SCHEMA)
    registry.register("human-input", HumanInputTool, HUMAN_INPUT_SCHEMA)
    if dispatcher is None:
        return registry
    for agent_cls, schema in (
        (TextGeneratorAgent, TEXT_GENERATOR_SCHEMA),
        (ImageGeneratorAgent, IMAGE_GENERATOR_SCHEMA),
        (EmbeddingGeneratorAgent, EMBEDDING_GENERATOR_SCHEMA),
        (ContentAnalyzerAgent, CONTENT_ANALYZER_SCHEMA),
        (PromptEnhancerAgent, PROMPT_ENHANCER_SCHEMA),
    ):
        registry.register(
            schema.type_name, functools.partial(agent_cls, dispatcher=dispatcher), schema
        )
    return registry
