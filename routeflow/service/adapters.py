"""Backend adapters: canonical request/response <-> provider wire shapes.

Each adapter owns one provider family. ``build_body`` produces the JSON body
the provider expects, ``parse_body`` extracts text, images or an embedding
plus whatever usage counts the provider reports. The router only knows the
adapter *name*; ``build_adapter`` turns that name into an instance bound to a
transport.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Type

from routeflow.logging import get_logger
from routeflow.service.catalog import ModelDescriptor
from routeflow.service.errors import AdapterError
from routeflow.service.transport import BackendTransport

logger = get_logger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_MAX_TOKENS = 2000
DEFAULT_IMAGE_SIZE = 1024

STYLE_ENHANCEMENTS: Dict[str, str] = {
    "cartoon": "cartoon style, vibrant colors, clean lines, animated",
    "realistic": "photorealistic, high detail, natural lighting, professional photography",
    "anime": "anime style, manga, japanese animation, detailed",
    "meme": "meme style, humorous, internet culture, bold text",
    "illustration": "digital illustration, artistic, detailed artwork",
}

STYLE_PRESETS: Dict[str, str] = {
    "cartoon": "comic-book",
    "realistic": "photographic",
    "anime": "anime",
    "illustration": "digital-art",
}


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate used when a provider omits usage counts."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def enhance_prompt(prompt: str, style: Optional[str]) -> str:
    suffix = STYLE_ENHANCEMENTS.get((style or "").lower())
    if not suffix:
        return prompt
    return f"{prompt}, {suffix}"


@dataclass
class CanonicalRequest:
    task_type: str
    model_id: Optional[str] = None
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: List[str] = field(default_factory=list)
    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    style: Optional[str] = None
    quality: Optional[str] = None
    number_of_images: int = 1
    seed: Optional[int] = None
    cfg_scale: Optional[float] = None
    steps: Optional[int] = None
    text: Optional[str] = None
    input_type: Optional[str] = None
    normalize: bool = True
    dimensions: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def for_model(self, model_id: str) -> "CanonicalRequest":
        return replace(self, model_id=model_id)


@dataclass
class CanonicalResponse:
    model_id: str
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    image_count: int = 0
    duration_ms: float = 0.0
    request_id: Optional[str] = None
    finish_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens or 0) + (self.output_tokens or 0)


class BackendAdapter:
    """Base adapter: subclasses implement ``build_body`` and ``parse_body``."""

    name = "base"

    def __init__(self, transport: BackendTransport) -> None:
        self.transport = transport

    def build_body(self, request: CanonicalRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_body(self, body: Dict[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        raise NotImplementedError

    async def invoke(self, request: CanonicalRequest) -> CanonicalResponse:
        if not request.model_id:
            raise AdapterError(
                "canonical request has no model id",
                error_code="invalid_request",
                recoverable=False,
            )
        body = self.build_body(request)
        sent = await self.transport.send(request.model_id, body)
        try:
            response = self.parse_body(sent.body, request)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.error(
                "adapter_malformed_response",
                adapter=self.name,
                model_id=request.model_id,
                error=str(exc),
            )
            raise AdapterError(
                f"malformed response from {request.model_id}",
                detail={"model_id": request.model_id, "adapter": self.name},
                error_code="malformed_response",
                recoverable=False,
            ) from exc
        response.duration_ms = sent.duration_ms
        response.request_id = sent.request_id
        return response


class ClaudeAdapter(BackendAdapter):
    name = "anthropic_claude"

    def build_body(self, request: CanonicalRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [
                {
                    "role": "user",
                    "content": [{"type": "text", "text": request.prompt or ""}],
                }
            ],
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if "top_k" in request.extra:
            body["top_k"] = request.extra["top_k"]
        if request.stop_sequences:
            body["stop_sequences"] = list(request.stop_sequences)
        return body

    def parse_body(self, body: Dict[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        parts = body["content"]
        text = "".join(
            part.get("text", "") for part in parts if part.get("type") == "text"
        )
        usage = body.get("usage") or {}
        return CanonicalResponse(
            model_id=request.model_id or "",
            text=text,
            input_tokens=usage.get("input_tokens", estimate_tokens(request.prompt)),
            output_tokens=usage.get("output_tokens", estimate_tokens(text)),
            finish_reason=body.get("stop_reason"),
            raw=body,
        )


class TitanImageAdapter(BackendAdapter):
    name = "titan_image"

    def build_body(self, request: CanonicalRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {"text": enhance_prompt(request.prompt or "", request.style)}
        if request.negative_prompt:
            params["negativeText"] = request.negative_prompt
        config: Dict[str, Any] = {
            "numberOfImages": request.number_of_images,
            "height": request.height or DEFAULT_IMAGE_SIZE,
            "width": request.width or DEFAULT_IMAGE_SIZE,
            "cfgScale": request.cfg_scale if request.cfg_scale is not None else 8.0,
            "quality": request.quality or "standard",
        }
        if request.seed is not None:
            config["seed"] = request.seed
        return {
            "taskType": "TEXT_IMAGE",
            "textToImageParams": params,
            "imageGenerationConfig": config,
        }

    def parse_body(self, body: Dict[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        if body.get("error"):
            raise ValueError(str(body["error"]))
        images = list(body["images"])
        return CanonicalResponse(
            model_id=request.model_id or "",
            images=images,
            image_count=len(images),
            raw=body,
        )


class StableDiffusionAdapter(BackendAdapter):
    name = "stable_diffusion"

    def build_body(self, request: CanonicalRequest) -> Dict[str, Any]:
        prompts = [{"text": enhance_prompt(request.prompt or "", request.style), "weight": 1}]
        if request.negative_prompt:
            prompts.append({"text": request.negative_prompt, "weight": -1})
        body: Dict[str, Any] = {
            "text_prompts": prompts,
            "cfg_scale": request.cfg_scale if request.cfg_scale is not None else 7,
            "height": request.height or DEFAULT_IMAGE_SIZE,
            "width": request.width or DEFAULT_IMAGE_SIZE,
            "samples": request.number_of_images,
            "steps": request.steps or 30,
            "sampler": "K_DPM_2_ANCESTRAL",
        }
        if request.seed is not None:
            body["seed"] = request.seed
        preset = STYLE_PRESETS.get((request.style or "").lower())
        if preset:
            body["style_preset"] = preset
        return body

    def parse_body(self, body: Dict[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        artifacts = body["artifacts"]
        images = [artifact["base64"] for artifact in artifacts]
        finish = artifacts[0].get("finishReason") if artifacts else None
        return CanonicalResponse(
            model_id=request.model_id or "",
            images=images,
            image_count=len(images),
            finish_reason=finish,
            raw=body,
        )


class TitanEmbeddingAdapter(BackendAdapter):
    name = "titan_embedding"

    def build_body(self, request: CanonicalRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "inputText": request.text if request.text is not None else (request.prompt or ""),
            "normalize": request.normalize,
        }
        if request.dimensions:
            body["dimensions"] = request.dimensions
        return body

    def parse_body(self, body: Dict[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        embedding = [float(value) for value in body["embedding"]]
        tokens = body.get("inputTextTokenCount")
        if tokens is None:
            tokens = estimate_tokens(request.text or request.prompt)
        return CanonicalResponse(
            model_id=request.model_id or "",
            embedding=embedding,
            input_tokens=tokens,
            output_tokens=0,
            raw=body,
        )


class GenericAdapter(BackendAdapter):
    """Prompt passthrough for providers without a dedicated adapter."""

    name = "generic"

    def build_body(self, request: CanonicalRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {"prompt": request.prompt or request.text or ""}
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            body["temperature"] = request.temperature
        body.update(request.extra)
        return body

    def parse_body(self, body: Dict[str, Any], request: CanonicalRequest) -> CanonicalResponse:
        text = None
        for key in ("outputText", "completion", "generation", "text"):
            if isinstance(body.get(key), str):
                text = body[key]
                break
        if text is None and isinstance(body.get("results"), list) and body["results"]:
            text = body["results"][0].get("outputText")
        embedding = body.get("embedding")
        images = list(body.get("images") or [])
        if text is None and embedding is None and not images:
            raise ValueError("no text, images or embedding in response")
        return CanonicalResponse(
            model_id=request.model_id or "",
            text=text,
            images=images,
            image_count=len(images),
            embedding=embedding,
            input_tokens=estimate_tokens(request.prompt or request.text),
            output_tokens=estimate_tokens(text),
            raw=body,
        )


ADAPTERS: Dict[str, Type[BackendAdapter]] = {
    ClaudeAdapter.name: ClaudeAdapter,
    TitanImageAdapter.name: TitanImageAdapter,
    StableDiffusionAdapter.name: StableDiffusionAdapter,
    TitanEmbeddingAdapter.name: TitanEmbeddingAdapter,
    GenericAdapter.name: GenericAdapter,
}


def adapter_name_for(model: ModelDescriptor) -> str:
    model_id = model.id
    if model_id.startswith("anthropic.claude"):
        return ClaudeAdapter.name
    if model_id.startswith("amazon.titan-image"):
        return TitanImageAdapter.name
    if model_id.startswith("stability."):
        return StableDiffusionAdapter.name
    if model_id.startswith("amazon.titan-embed"):
        return TitanEmbeddingAdapter.name
    return GenericAdapter.name


def build_adapter(name: str, transport: BackendTransport) -> BackendAdapter:
    adapter_cls = ADAPTERS.get(name)
    if adapter_cls is None:
        raise AdapterError(
            f"unknown adapter '{name}'",
            error_code="invalid_request",
            recoverable=False,
        )
    return adapter_cls(transport)
