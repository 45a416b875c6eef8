import json

import httpx
import pytest

from routeflow.service.adapters import (
    ANTHROPIC_VERSION,
    CanonicalRequest,
    ClaudeAdapter,
    GenericAdapter,
    StableDiffusionAdapter,
    TitanEmbeddingAdapter,
    TitanImageAdapter,
    adapter_name_for,
    build_adapter,
    estimate_tokens,
)
from routeflow.service.catalog import default_catalog
from routeflow.service.errors import AdapterError
from routeflow.service.transport import BedrockTransport, StubTransport, status_to_error

HAIKU = "anthropic.claude-3-haiku-20240307-v1:0"


def bedrock(handler) -> BedrockTransport:
    return BedrockTransport(
        region="us-west-2",
        api_key="test-key",
        http_transport=httpx.MockTransport(handler),
    )


def test_claude_body_shape():
    body = ClaudeAdapter(StubTransport()).build_body(
        CanonicalRequest(
            task_type="text-generation",
            model_id=HAIKU,
            prompt="hello",
            system_prompt="be brief",
            max_tokens=50,
            temperature=0.2,
        )
    )

    assert body == {
        "anthropic_version": ANTHROPIC_VERSION,
        "max_tokens": 50,
        "messages": [{"role": "user", "content": [{"type": "text", "text": "hello"}]}],
        "system": "be brief",
        "temperature": 0.2,
    }


def test_titan_image_body_applies_style():
    body = TitanImageAdapter(StubTransport()).build_body(
        CanonicalRequest(
            task_type="text-to-image",
            prompt="a cat",
            style="cartoon",
            negative_prompt="blurry",
            seed=7,
        )
    )

    assert body["taskType"] == "TEXT_IMAGE"
    assert body["textToImageParams"]["text"].startswith("a cat, cartoon style")
    assert body["textToImageParams"]["negativeText"] == "blurry"
    assert body["imageGenerationConfig"]["cfgScale"] == 8.0
    assert body["imageGenerationConfig"]["seed"] == 7
    assert body["imageGenerationConfig"]["width"] == 1024


def test_stable_diffusion_body_weights_and_preset():
    body = StableDiffusionAdapter(StubTransport()).build_body(
        CanonicalRequest(
            task_type="text-to-image", prompt="a dog", negative_prompt="text", style="realistic"
        )
    )

    assert body["text_prompts"][0]["weight"] == 1
    assert body["text_prompts"][1] == {"text": "text", "weight": -1}
    assert body["cfg_scale"] == 7
    assert body["steps"] == 30
    assert body["style_preset"] == "photographic"


def test_embedding_body():
    body = TitanEmbeddingAdapter(StubTransport()).build_body(
        CanonicalRequest(task_type="text-embedding", text="abc", dimensions=256)
    )
    assert body == {"inputText": "abc", "normalize": True, "dimensions": 256}


def test_adapter_selection_by_model_family():
    names = {model.id: adapter_name_for(model) for model in default_catalog().entries()}

    assert names[HAIKU] == "anthropic_claude"
    assert names["amazon.titan-image-generator-v1"] == "titan_image"
    assert names["stability.stable-diffusion-xl-v1"] == "stable_diffusion"
    assert names["amazon.titan-embed-image-v1"] == "titan_embedding"


def test_build_adapter_unknown_name():
    with pytest.raises(AdapterError) as exc:
        build_adapter("mystery", StubTransport())
    assert exc.value.recoverable is False


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcde") == 2


@pytest.mark.parametrize(
    "status,code,recoverable",
    [
        (429, "rate_limited", True),
        (408, "timeout", True),
        (504, "timeout", True),
        (503, "temporarily_unavailable", True),
        (500, "provider_error", True),
        (400, "invalid_request", False),
        (403, "invalid_request", False),
    ],
)
def test_status_mapping(status, code, recoverable):
    error = status_to_error(status, "m")
    assert error.error_code == code
    assert error.recoverable is recoverable


@pytest.mark.asyncio
async def test_bedrock_transport_posts_to_invoke_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "hi there"}],
                "usage": {"input_tokens": 3, "output_tokens": 2},
                "stop_reason": "end_turn",
            },
            headers={"x-amzn-RequestId": "req-1"},
        )

    transport = bedrock(handler)
    adapter = ClaudeAdapter(transport)
    response = await adapter.invoke(
        CanonicalRequest(task_type="text-generation", model_id=HAIKU, prompt="hi")
    )
    await transport.close()

    assert seen["url"] == (
        "https://bedrock-runtime.us-west-2.amazonaws.com/model/" + HAIKU + "/invoke"
    )
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["messages"][0]["content"][0]["text"] == "hi"
    assert response.text == "hi there"
    assert response.total_tokens == 5
    assert response.request_id == "req-1"


@pytest.mark.asyncio
async def test_bedrock_transport_maps_throttling():
    def handler(request):
        return httpx.Response(429, json={"message": "Too many requests"})

    transport = bedrock(handler)
    with pytest.raises(AdapterError) as exc:
        await transport.send(HAIKU, {})
    await transport.close()

    assert exc.value.error_code == "rate_limited"
    assert exc.value.recoverable is True
    assert exc.value.message == "Too many requests"


@pytest.mark.asyncio
async def test_bedrock_transport_maps_connect_errors():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    transport = bedrock(handler)
    with pytest.raises(AdapterError) as exc:
        await transport.send(HAIKU, {})
    await transport.close()

    assert exc.value.error_code == "network_error"


@pytest.mark.asyncio
async def test_bedrock_transport_rejects_non_json():
    def handler(request):
        return httpx.Response(200, content=b"<html>")

    transport = bedrock(handler)
    with pytest.raises(AdapterError) as exc:
        await transport.send(HAIKU, {})
    await transport.close()

    assert exc.value.error_code == "malformed_response"
    assert exc.value.recoverable is False


@pytest.mark.asyncio
async def test_malformed_body_becomes_adapter_error():
    def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    transport = bedrock(handler)
    with pytest.raises(AdapterError) as exc:
        await ClaudeAdapter(transport).invoke(
            CanonicalRequest(task_type="text-generation", model_id=HAIKU, prompt="x")
        )
    await transport.close()

    assert exc.value.error_code == "malformed_response"


@pytest.mark.asyncio
async def test_stub_transport_is_deterministic_and_injects_failures():
    stub = StubTransport()
    request = CanonicalRequest(task_type="text-generation", model_id=HAIKU, prompt="same")
    adapter = ClaudeAdapter(stub)

    first = await adapter.invoke(request)
    second = await adapter.invoke(request)
    assert first.text == second.text
    assert len(stub.calls_for(HAIKU)) == 2

    stub.fail(HAIKU, "rate_limited")
    with pytest.raises(AdapterError) as exc:
        await adapter.invoke(request)
    assert exc.value.error_code == "rate_limited"
    assert (await adapter.invoke(request)).text == first.text


@pytest.mark.asyncio
async def test_stub_image_and_embedding_bodies_parse():
    stub = StubTransport()

    images = await TitanImageAdapter(stub).invoke(
        CanonicalRequest(
            task_type="text-to-image",
            model_id="amazon.titan-image-generator-v1",
            prompt="p",
            number_of_images=2,
        )
    )
    sdxl = await StableDiffusionAdapter(stub).invoke(
        CanonicalRequest(task_type="text-to-image", model_id="stability.stable-diffusion-xl-v1", prompt="p")
    )
    embedding = await TitanEmbeddingAdapter(stub).invoke(
        CanonicalRequest(
            task_type="text-embedding", model_id="amazon.titan-embed-text-v1", text="abcdefgh", dimensions=4
        )
    )

    assert images.image_count == 2
    assert sdxl.image_count == 1
    assert sdxl.finish_reason == "SUCCESS"
    assert len(embedding.embedding) == 4
    assert embedding.input_tokens == 2


@pytest.mark.asyncio
async def test_generic_adapter_reads_output_text():
    response = await GenericAdapter(StubTransport()).invoke(
        CanonicalRequest(task_type="text-generation", model_id="meta.llama3", prompt="q")
    )
    assert response.text == "[meta.llama3] ok"
