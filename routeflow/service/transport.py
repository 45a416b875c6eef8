from __future__ import annotations

import base64
import hashlib
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from routeflow.config import DEFAULT_BEDROCK_ENDPOINT_TEMPLATE
from routeflow.logging import get_logger
from routeflow.service.errors import AdapterError

logger = get_logger(__name__)


@dataclass
class TransportResponse:
    body: Dict[str, Any]
    duration_ms: float
    request_id: Optional[str] = None


class BackendTransport(Protocol):
    async def send(self, model_id: str, body: Dict[str, Any]) -> TransportResponse:
        ...


def status_to_error(status_code: int, model_id: str, message: str = "") -> AdapterError:
    """Translate a provider HTTP status into a provider-agnostic adapter error."""
    detail = {"model_id": model_id, "status_code": status_code}
    text = message or f"provider returned HTTP {status_code}"
    if status_code == 429:
        return AdapterError(text, detail=detail, error_code="rate_limited")
    if status_code in (408, 504):
        return AdapterError(text, detail=detail, error_code="timeout")
    if status_code == 503:
        return AdapterError(text, detail=detail, error_code="temporarily_unavailable")
    if status_code >= 500:
        return AdapterError(text, detail=detail, error_code="provider_error")
    return AdapterError(
        text, detail=detail, error_code="invalid_request", recoverable=False
    )


class BedrockTransport:
    """JSON-over-HTTPS transport for the Bedrock runtime ``invoke`` endpoint."""

    def __init__(
        self,
        *,
        region: str = "ap-northeast-2",
        endpoint_template: str = DEFAULT_BEDROCK_ENDPOINT_TEMPLATE,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.region = region
        self.endpoint_template = endpoint_template
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

    def endpoint_for(self, model_id: str) -> str:
        return self.endpoint_template.format(region=self.region, model_id=model_id)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for provider calls."""
        if self._client is None:
            headers = {"Content-Type": "application/json", "Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers=headers,
                transport=self._http_transport,
            )
        return self._client

    async def send(self, model_id: str, body: Dict[str, Any]) -> TransportResponse:
        client = await self._get_client()
        url = self.endpoint_for(model_id)
        started = time.perf_counter()
        try:
            response = await client.post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_body = None
            try:
                error_body = e.response.json()
            except ValueError:
                error_body = None
            message = ""
            if isinstance(error_body, dict):
                message = str(error_body.get("message") or "")
            logger.error(
                "backend_api_error",
                model_id=model_id,
                status_code=e.response.status_code,
                error_body=error_body,
            )
            raise status_to_error(e.response.status_code, model_id, message) from e
        except httpx.TimeoutException as e:
            logger.error("backend_timeout", model_id=model_id, error=str(e))
            raise AdapterError(
                f"request to {model_id} timed out",
                detail={"model_id": model_id},
                error_code="timeout",
            ) from e
        except httpx.TransportError as e:
            # Connect errors and other transport-level failures
            logger.error("backend_connect_error", model_id=model_id, error=str(e))
            raise AdapterError(
                f"could not reach backend for {model_id}",
                detail={"model_id": model_id},
                error_code="network_error",
            ) from e

        duration_ms = (time.perf_counter() - started) * 1000
        try:
            payload = response.json()
        except ValueError as e:
            raise AdapterError(
                f"backend returned invalid JSON for {model_id}",
                detail={"model_id": model_id},
                error_code="malformed_response",
                recoverable=False,
            ) from e
        if not isinstance(payload, dict):
            raise AdapterError(
                f"backend returned a non-object body for {model_id}",
                detail={"model_id": model_id},
                error_code="malformed_response",
                recoverable=False,
            )
        return TransportResponse(
            body=payload,
            duration_ms=duration_ms,
            request_id=response.headers.get("x-amzn-RequestId"),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


def _digest(value: Any) -> str:
    return hashlib.sha256(json.dumps(value, sort_keys=True).encode()).hexdigest()


class StubTransport:
    """In-process transport returning canned provider bodies.

    Bodies are derived deterministically from the request so the same call
    always yields the same response. Failures can be queued per model with
    ``fail``; every call is recorded in ``calls``.
    """

    def __init__(self, *, latency_ms: float = 1.0) -> None:
        self.latency_ms = latency_ms
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self._failures: Dict[str, List[AdapterError]] = {}
        self._always_fail: Dict[str, AdapterError] = {}

    def fail(
        self,
        model_id: str,
        error_code: str = "provider_error",
        *,
        times: Optional[int] = 1,
        recoverable: Optional[bool] = None,
    ) -> None:
        """Make the next ``times`` calls to ``model_id`` fail (``None`` = always)."""
        error = AdapterError(
            f"injected {error_code} for {model_id}",
            detail={"model_id": model_id},
            error_code=error_code,
            recoverable=recoverable,
        )
        if times is None:
            self._always_fail[model_id] = error
            return
        self._failures.setdefault(model_id, []).extend([error] * times)

    def clear_failures(self) -> None:
        self._failures.clear()
        self._always_fail.clear()

    def calls_for(self, model_id: str) -> List[Dict[str, Any]]:
        return [body for called, body in self.calls if called == model_id]

    async def send(self, model_id: str, body: Dict[str, Any]) -> TransportResponse:
        self.calls.append((model_id, body))
        if model_id in self._always_fail:
            raise self._always_fail[model_id]
        queued = self._failures.get(model_id)
        if queued:
            raise queued.pop(0)
        return TransportResponse(
            body=self._canned_body(model_id, body),
            duration_ms=self.latency_ms,
            request_id=str(uuid.uuid4()),
        )

    def _canned_body(self, model_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        seed = _digest({"model": model_id, "body": body})
        if model_id.startswith("anthropic."):
            prompt = ""
            for message in body.get("messages") or []:
                for part in message.get("content") or []:
                    if isinstance(part, dict) and part.get("type") == "text":
                        prompt += part.get("text", "")
            return {
                "id": f"msg_{seed[:12]}",
                "type": "message",
                "role": "assistant",
                "content": [{"type": "text", "text": f"[{model_id}] {prompt[:200]}"}],
                "stop_reason": "end_turn",
                "usage": {
                    "input_tokens": max(1, len(prompt) // 4),
                    "output_tokens": 16,
                },
            }
        if model_id.startswith("amazon.titan-image"):
            count = int((body.get("imageGenerationConfig") or {}).get("numberOfImages", 1))
            images = [
                base64.b64encode(f"{seed}:{i}".encode()).decode() for i in range(count)
            ]
            return {"images": images, "error": None}
        if model_id.startswith("stability."):
            return {
                "result": "success",
                "artifacts": [
                    {
                        "base64": base64.b64encode(seed.encode()).decode(),
                        "seed": int(seed[:8], 16),
                        "finishReason": "SUCCESS",
                    }
                ],
            }
        if model_id.startswith("amazon.titan-embed"):
            dims = int(body.get("dimensions") or 8)
            text = str(body.get("inputText") or "")
            vector = [int(seed[i % 64], 16) / 15.0 for i in range(dims)]
            return {"embedding": vector, "inputTextTokenCount": max(1, len(text) // 4)}
        return {"outputText": f"[{model_id}] ok", "completion": f"[{model_id}] ok"}
