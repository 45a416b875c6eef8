import pytest

from routeflow.service.agents import (
    HumanInputTool,
    TemplateTool,
    TextGeneratorAgent,
    register_builtin_agents,
)
from routeflow.service.catalog import default_catalog
from routeflow.service.dispatch import BackendDispatcher
from routeflow.service.errors import InvalidAgentConfig, UnknownAgentType
from routeflow.service.health import HealthMonitor
from routeflow.service.registry import (
    AgentContext,
    AgentRegistry,
    AgentResult,
    ConfigSchema,
    FieldSpec,
    validate_config,
)
from routeflow.service.router import CostAwareRouter
from routeflow.service.templating import interpolate_template, resolve_path
from routeflow.service.transport import StubTransport

HAIKU = "anthropic.claude-3-haiku-20240307-v1:0"
SONNET = "anthropic.claude-3-5-sonnet-20241022-v2:0"


class EchoAgent:
    def __init__(self, config):
        self.config = config

    async def execute(self, context):
        return AgentResult(success=True, output=dict(self.config))


ECHO_SCHEMA = ConfigSchema(
    type_name="echo",
    properties={"message": FieldSpec("string"), "count": FieldSpec("number")},
    required=("message",),
)


def context(state=None, node_id="n1"):
    return AgentContext(execution_id="e1", node_id=node_id, state=state or {}, config={})


def dispatch_registry():
    catalog = default_catalog()
    stub = StubTransport()
    dispatcher = BackendDispatcher(CostAwareRouter(catalog, HealthMonitor()), catalog, stub)
    return register_builtin_agents(AgentRegistry(), dispatcher), stub


class TestRegistry:
    def test_create_validates_required_fields(self):
        registry = AgentRegistry()
        registry.register("echo", EchoAgent, ECHO_SCHEMA)

        with pytest.raises(InvalidAgentConfig) as exc:
            registry.create("echo", {})

        assert str(exc.value) == "Missing required field 'message' for agent type 'echo'"
        assert exc.value.detail["field"] == "message"

    def test_create_checks_types(self):
        registry = AgentRegistry()
        registry.register("echo", EchoAgent, ECHO_SCHEMA)

        result = registry.validate("echo", {"message": "hi", "count": "three"})

        assert result.valid is False
        assert "must be of type number" in result.messages[0]

    def test_unknown_type(self):
        with pytest.raises(UnknownAgentType):
            AgentRegistry().create("ghost", {})

    def test_register_replaces_and_lists_sorted(self):
        registry = AgentRegistry()
        registry.register("zeta", EchoAgent, ECHO_SCHEMA)
        registry.register("alpha", EchoAgent, ECHO_SCHEMA)
        registry.register("zeta", EchoAgent, ECHO_SCHEMA)

        assert registry.available_types() == ["alpha", "zeta"]

    def test_closed_schema_rejects_extra_fields(self):
        schema = ConfigSchema(type_name="strict", required=(), allow_extra=False)
        result = validate_config(schema, {"surprise": 1})
        assert result.messages == ["Unknown field 'surprise' for agent type 'strict'"]

    def test_json_schema_export(self):
        exported = ECHO_SCHEMA.to_json_schema()
        assert exported["required"] == ["message"]
        assert exported["properties"]["count"]["type"] == "number"

    def test_builtin_types_without_dispatcher(self):
        registry = register_builtin_agents(AgentRegistry(), None)
        assert registry.available_types() == ["human-input", "template"]


class TestTemplating:
    def test_resolve_nested_paths(self):
        state = {"a": {"b": [{"c": 3}]}}
        assert resolve_path(state, "a.b.0.c") == 3
        assert resolve_path(state, "a.x", "d") == "d"

    def test_interpolation_leaves_unresolved_placeholders(self):
        state = {"topic": "owls", "count": 2, "tags": ["a"]}
        rendered = interpolate_template(
            {"p": "About {{topic}} x{{ count }} {{tags}} {{missing}}", "n": 5}, state
        )
        assert rendered == {"p": 'About owls x2 ["a"] {{missing}}', "n": 5}


class TestBuiltinAgents:
    @pytest.mark.asyncio
    async def test_text_generator_interpolates_and_dispatches(self):
        registry, stub = dispatch_registry()
        agent = registry.create("text-generator", {"prompt": "Write about {{topic}}"})

        result = await agent.execute(context({"topic": "tides"}))

        assert result.success is True
        assert result.model_used == HAIKU
        assert "Write about tides" in result.output["text"]
        assert result.output["metadata"]["model_used"] == HAIKU
        assert result.cost > 0
        assert result.tokens_used > 0
        sent = stub.calls_for(HAIKU)[0]
        assert sent["messages"][0]["content"][0]["text"] == "Write about tides"

    @pytest.mark.asyncio
    async def test_quality_priority_routes_to_premium_model(self):
        registry, _ = dispatch_registry()
        agent = registry.create("text-generator", {"prompt": "x", "cost_priority": "quality"})

        result = await agent.execute(context())

        assert result.model_used == SONNET

    @pytest.mark.asyncio
    async def test_dispatch_failure_becomes_failed_result(self):
        registry, stub = dispatch_registry()
        stub.fail(HAIKU, times=None)
        stub.fail(SONNET, times=None)
        agent = registry.create("text-generator", {"prompt": "x"})

        result = await agent.execute(context())

        assert result.success is False
        assert result.error_code == "all_backends_exhausted"
        assert result.recoverable is True

    @pytest.mark.asyncio
    async def test_invalid_routing_option_is_a_config_failure(self):
        registry, _ = dispatch_registry()
        agent = registry.create(
            "text-generator", {"prompt": "x", "quality_requirement": "legendary"}
        )

        result = await agent.execute(context())

        assert result.success is False
        assert result.error_code == "invalid_agent_config"

    @pytest.mark.asyncio
    async def test_image_generator_output(self):
        registry, _ = dispatch_registry()
        agent = registry.create("image-generator", {"prompt": "a fox", "cost_priority": "cost"})

        result = await agent.execute(context())

        assert result.success is True
        assert len(result.output["images"]) == 1
        assert result.images_generated == 1
        assert result.output["metadata"]["model_used"] == "amazon.titan-image-generator-v1"

    @pytest.mark.asyncio
    async def test_embedding_generator_output(self):
        registry, _ = dispatch_registry()
        agent = registry.create("embedding-generator", {"text": "hello", "dimensions": 16})

        result = await agent.execute(context())

        assert result.output["dimensions"] == 16
        assert result.embeddings_created == 1

    @pytest.mark.asyncio
    async def test_content_analyzer_and_prompt_enhancer(self):
        registry, _ = dispatch_registry()
        analyzer = registry.create(
            "content-analyzer", {"content": "{{text}}", "analysis_type": "sentiment"}
        )
        enhancer = registry.create(
            "prompt-enhancer", {"base_prompt": "draw a cat", "target_audience": "kids"}
        )

        analysis = await analyzer.execute(context({"text": "great product"}))
        enhanced = await enhancer.execute(context())

        assert analysis.output["original_content"] == "great product"
        assert analysis.output["analysis_type"] == "sentiment"
        assert len(analysis.output["analysis"]["summary"]) <= 200
        assert enhanced.output["original_prompt"] == "draw a cat"
        assert enhanced.output["enhanced_prompt"]
        assert enhanced.output["enhancement_type"] == "clarity"

    @pytest.mark.asyncio
    async def test_template_tool(self):
        result = await TemplateTool({"template": "Hi {{user.name}}"}).execute(
            context({"user": {"name": "Ada"}})
        )
        assert result.output == {"text": "Hi Ada"}

    @pytest.mark.asyncio
    async def test_human_input_reads_answer_or_default(self):
        tool = HumanInputTool({"prompt": "Approve?"})
        answered = await tool.execute(context({"review_answer": "yes"}, node_id="review"))
        missing = await tool.execute(context(node_id="review"))
        defaulted = await HumanInputTool({"default": "no"}).execute(context(node_id="review"))

        assert answered.output == {"answer": "yes"}
        assert missing.success is False
        assert missing.error_code == "human_input_required"
        assert missing.recoverable is False
        assert defaulted.output == {"answer": "no"}

    def test_text_generator_route_request_overrides(self):
        agent = TextGeneratorAgent({"prompt": "x"}, dispatcher=None)
        request = agent.route_request(
            {"cost_priority": "speed", "budget_constraint": 0.01, "task_type": "summarization"}
        )
        assert request.task_type == "summarization"
        assert request.quality_requirement.value == "basic"
        assert request.latency_requirement.value == "low"
        assert request.budget_constraint == 0.01
