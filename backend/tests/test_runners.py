"""Tests for the per-kind node runners."""

import base64

import pytest

from core.constants import StepStatus
from core.exceptions import StepExecutionError
from integrations.base import HttpResponse, Services
from integrations.local import LocalToolRegistry
from runners.base_runner import StepEnvironment, coerce_output
from runners.implementations.action_runner import ActionRunner, normalise_action_type
from runners.implementations.ai_runner import AiRunner, parse_stop_sequences
from runners.implementations.api_runner import ApiRunner, status_matcher
from runners.implementations.condition_runner import ConditionRunner
from runners.implementations.loop_runner import LoopRunner
from runners.implementations.switch_runner import SwitchRunner
from runners.implementations.tool_runner import ToolRunner, coerce_inputs
from runners.implementations.transform_runner import TransformRunner, format_number, to_strftime
from runners.implementations.trigger_runner import TriggerRunner
from runners.registry import RunnerRegistry
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind, WorkflowGraph
from workflow.resolver import TemplateResolver

from conftest import FakeAi, ok_response


def make_node(node_id, kind, **config):
    return Node.model_validate({"id": node_id, "kind": kind, "config": config})


def make_env(services, settings, graph=None):
    resolver = TemplateResolver()
    return StepEnvironment(
        services=services,
        settings=settings,
        graph=graph or WorkflowGraph(),
        resolver=resolver,
        evaluator=ConditionEvaluator(resolver),
    )


@pytest.fixture
def env(services, settings):
    return make_env(services, settings)


@pytest.fixture
def context():
    ctx = ExecutionContext(
        execution_id="exec-1",
        trigger_payload={
            "name": "Ada",
            "age": 36,
            "users": [
                {"name": "ada", "age": 36, "city": "London"},
                {"name": "bob", "age": 15, "city": "Leeds"},
                {"name": "cy", "age": 52},
            ],
        },
    )
    ctx.set_output("fetch", {"id": 42, "tags": ["a", "b"]})
    return ctx


# ─── Registry ────────────────────────────────────────────────────

@pytest.mark.unit
class TestRegistry:

    def test_every_kind_has_a_runner(self):
        registry = RunnerRegistry()
        assert set(registry.available_kinds) == set(NodeKind)
        for kind in NodeKind:
            assert registry.require(kind).kind == kind

    def test_register_replaces(self):
        registry = RunnerRegistry()

        class CustomAi(AiRunner):
            pass

        custom = CustomAi()
        registry.register(custom)
        assert registry.get(NodeKind.AI) is custom


# ─── Trigger / condition / switch ────────────────────────────────

@pytest.mark.unit
class TestTriggerRunner:

    @pytest.mark.asyncio
    async def test_exposes_payload(self, env, context):
        result = await TriggerRunner().run(make_node("start", "trigger"), context, env)

        assert result.status == StepStatus.COMPLETED
        assert result.output["triggerType"] == "manual"
        assert result.output["triggerData"]["name"] == "Ada"
        assert context.get("trigger")["age"] == 36

    @pytest.mark.asyncio
    async def test_disabled_trigger_fails(self, env, context):
        result = await TriggerRunner().run(make_node("start", "trigger", enabled=False), context, env)
        assert result.failed
        assert result.error_message == "Trigger disabled"


@pytest.mark.unit
class TestConditionRunner:

    @pytest.mark.asyncio
    async def test_store_result(self, env, context):
        node = make_node(
            "c",
            "condition",
            conditions=[{"leftOperand": "{{ trigger.name }}", "operator": "equals", "rightOperand": "ada"}],
            caseSensitive=False,
            storeResult=True,
            resultVariable="isAda",
        )
        result = await ConditionRunner().run(node, context, env)

        assert result.handle == "true"
        assert result.output == {"result": True, "conditionMet": True, "evaluatedConditions": 1}
        assert context.get("isAda") is True

    @pytest.mark.asyncio
    async def test_negated_expression(self, env, context):
        node = make_node("c", "condition", expression="{{ trigger.age }} > 18", negate=True)
        result = await ConditionRunner().run(node, context, env)
        assert result.handle == "false"

    @pytest.mark.asyncio
    async def test_unresolved_operand_warns(self, env, context):
        node = make_node("c", "condition", expression="{{ trigger.missing }} == 'x'")
        result = await ConditionRunner().run(node, context, env)

        assert result.handle == "false"
        assert result.warnings == ("Unresolved reference {{trigger.missing}}",)


@pytest.mark.unit
class TestSwitchRunner:

    @pytest.mark.asyncio
    async def test_number_selector_matches_string_case(self, env, context):
        context.set("tier", 2)
        node = make_node("s", "switch", selector="{{ tier }}", cases=[1, "2", 3])
        result = await SwitchRunner().run(node, context, env)

        assert result.handle == "2"
        assert result.output["caseIndex"] == 1

    @pytest.mark.asyncio
    async def test_no_match_uses_default_edge(self, services, settings, context):
        graph = WorkflowGraph.parse(
            {
                "nodes": [{"id": "s", "kind": "switch"}, {"id": "d", "kind": "transform"}],
                "edges": [{"source": "s", "target": "d", "sourceHandle": "default"}],
            }
        )
        node = make_node("s", "switch", selector="x", cases=["a"])
        result = await SwitchRunner().run(node, context, make_env(services, settings, graph))
        assert result.handle == "default"

    @pytest.mark.asyncio
    async def test_no_match_without_default_is_skipped(self, env, context):
        node = make_node("s", "switch", selector="x", cases=["a"])
        result = await SwitchRunner().run(node, context, env)

        assert result.status == StepStatus.SKIPPED
        assert result.handle is None


# ─── Action ──────────────────────────────────────────────────────

@pytest.mark.unit
class TestActionRunner:

    def test_normalise_action_type(self):
        assert normalise_action_type("Send Email") == "send_email"
        assert normalise_action_type("HTTP") == "http_request"
        assert normalise_action_type("send-notification") == "notification"

    @pytest.mark.asyncio
    async def test_dispatches_to_handler_with_credential(self, env, context, actions):
        node = make_node(
            "n",
            "action",
            actionType="notification",
            notificationMessage="Hello {{ trigger.name }}",
            integrationId="crm",
        )
        result = await ActionRunner().run(node, context, env)

        assert result.status == StepStatus.COMPLETED
        action_type, params, credential = actions.calls[0]
        assert action_type == "notification"
        assert params == {"message": "Hello Ada"}
        assert credential.access_token == "token-123"

    @pytest.mark.asyncio
    async def test_unknown_type(self, env, context):
        result = await ActionRunner().run(make_node("n", "action", actionType="teleport"), context, env)
        assert result.failed
        assert "Unknown action type" in result.error_message

    @pytest.mark.asyncio
    async def test_missing_required_param(self, env, context):
        result = await ActionRunner().run(make_node("n", "action", actionType="send_email"), context, env)
        assert result.error_message == "Action 'send_email' requires 'emailTo'"

    @pytest.mark.asyncio
    async def test_run_condition_not_met_skips(self, env, context, actions):
        node = make_node(
            "n",
            "action",
            actionType="send_email",
            emailTo="a@b.c",
            runConditionally=True,
            conditionExpression="{{ trigger.age }} < 18",
        )
        result = await ActionRunner().run(node, context, env)

        assert result.status == StepStatus.SKIPPED
        assert actions.calls == []

    @pytest.mark.asyncio
    async def test_http_request_with_output_shaping(self, env, context, fake_http):
        fake_http.responses = [ok_response({"items": [{"id": "7"}]})]
        node = make_node(
            "n",
            "action",
            actionType="http_request",
            httpUrl="https://api.test/items",
            httpMethod="post",
            httpBody='{"name": "{{ trigger.name }}"}',
            outputPath="data.items.0.id",
            outputFormat="number",
            outputVariable="firstId",
        )
        result = await ActionRunner().run(node, context, env)

        request = fake_http.requests[0]
        assert request.method == "POST"
        assert request.json == {"name": "Ada"}
        assert result.output == 7
        assert context.get("firstId") == 7

    @pytest.mark.asyncio
    async def test_http_client_error_fails_without_retry(self, env, context, fake_http):
        fake_http.responses = [HttpResponse(status=400)]
        node = make_node("n", "action", actionType="http_request", httpUrl="https://api.test/x")
        result = await ActionRunner().run(node, context, env)

        assert result.failed
        assert result.attempts == 1
        assert result.error_message == "HTTP 400 from https://api.test/x"


@pytest.mark.unit
class TestCoerceOutput:

    def test_formats(self):
        assert coerce_output('{"a": 1}', "json") == {"a": 1}
        assert coerce_output({"a": 1}, "text") == '{"a": 1}'
        assert coerce_output("2.50", "number") == 2.5
        assert coerce_output("yes", "boolean") is True
        assert coerce_output("x", None) == "x"

    def test_invalid_number(self):
        with pytest.raises(StepExecutionError):
            coerce_output("abc", "number")


# ─── API ─────────────────────────────────────────────────────────

@pytest.mark.unit
class TestApiRunner:

    def test_status_matcher(self):
        assert status_matcher(None)(204)
        assert not status_matcher("200-299")(301)
        assert status_matcher("200,201")(201)
        assert status_matcher([404])(404)
        with pytest.raises(StepExecutionError):
            status_matcher("ok")

    @pytest.mark.asyncio
    async def test_builds_request(self, env, context, fake_http):
        fake_http.responses = [ok_response({"data": {"user": {"id": 42}}}, status=201)]
        node = make_node(
            "n",
            "api",
            httpMethod="POST",
            urlHost="api.test",
            urlPath="users",
            queryParams=[{"key": "source", "value": "{{ trigger.name }}"}],
            headers={"X-Trace": "abc"},
            body={"id": "{{ fetch.id }}"},
            authType="bearer",
            bearerToken="secret",
            expectedStatusCode="201",
            responsePath="data.user.id",
            outputVariable="userId",
        )
        result = await ApiRunner().run(node, context, env)

        request = fake_http.requests[0]
        assert request.url == "https://api.test/users"
        assert request.params == {"source": "Ada"}
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["X-Trace"] == "abc"
        assert request.json == {"id": 42}
        assert result.output == {"status": 201, "data": 42}
        assert context.get("userId") == 42

    @pytest.mark.asyncio
    async def test_basic_auth_and_full_response(self, env, context, fake_http):
        fake_http.responses = [ok_response("pong", headers={"X-Rate": "9"})]
        node = make_node(
            "n",
            "api",
            url="https://api.test/ping",
            authType="basic",
            basicUsername="u",
            basicPassword="p",
            storeFullResponse=True,
        )
        result = await ApiRunner().run(node, context, env)

        expected = "Basic " + base64.b64encode(b"u:p").decode()
        assert fake_http.requests[0].headers["Authorization"] == expected
        assert result.output == {"status": 200, "data": "pong", "headers": {"X-Rate": "9"}, "body": "pong"}

    @pytest.mark.asyncio
    async def test_api_key_and_credential(self, env, context, fake_http):
        node = make_node(
            "n",
            "api",
            url="https://api.test/me",
            authType="api_key",
            apiKeyHeader="X-Key",
            apiKeyValue="k1",
            integrationId="crm",
        )
        await ApiRunner().run(node, context, env)

        headers = fake_http.requests[0].headers
        assert headers["X-Key"] == "k1"
        assert headers["Authorization"] == "Bearer token-123"

    @pytest.mark.asyncio
    async def test_oauth2_requires_integration(self, env, context):
        node = make_node("n", "api", url="https://api.test/me", authType="oauth2")
        result = await ApiRunner().run(node, context, env)
        assert result.error_message == "OAuth2 authentication requires 'integrationId'"

    @pytest.mark.asyncio
    async def test_fallback_value(self, env, context, fake_http):
        fake_http.responses = [HttpResponse(status=500)]
        node = make_node("n", "api", url="https://api.test/x", retryOnFailure=False, fallbackValue={"cached": True})
        result = await ApiRunner().run(node, context, env)

        assert result.status == StepStatus.COMPLETED
        assert result.output == {"cached": True}
        assert "API call failed, using fallback value" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, env, context, fake_http):
        fake_http.responses = [ConnectionError("reset"), ok_response({"ok": 1})]
        result = await ApiRunner().run(make_node("n", "api", url="https://api.test/x", maxRetries=1), context, env)

        assert result.status == StepStatus.COMPLETED
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_missing_url(self, env, context):
        result = await ApiRunner().run(make_node("n", "api"), context, env)
        assert result.error_message == "API node requires 'url'"


# ─── AI ──────────────────────────────────────────────────────────

@pytest.mark.unit
class TestAiRunner:

    def test_parse_stop_sequences(self):
        assert parse_stop_sequences("END, STOP\nHALT") == ["END", "STOP", "HALT"]
        assert parse_stop_sequences(["a", ""]) == ["a"]
        assert parse_stop_sequences(None) == []

    @pytest.mark.asyncio
    async def test_prompt_is_resolved(self, env, context, fake_ai):
        node = make_node(
            "n",
            "ai",
            model="claude-test",
            systemPrompt="You are terse.",
            userPrompt="Summarise {{ trigger.name }}",
            temperature="0.2",
            maxTokens=50,
            outputVariable="summary",
        )
        result = await AiRunner().run(node, context, env)

        config, prompt = fake_ai.calls[0]
        assert prompt.user == "Summarise Ada"
        assert prompt.system == "You are terse."
        assert config.temperature == 0.2
        assert config.max_tokens == 50
        assert result.output == {"response": "hello from the model", "model": "claude-test"}
        assert context.get("summary") == "hello from the model"

    @pytest.mark.asyncio
    async def test_json_mode_extracts_from_prose(self, services, settings, context):
        services.ai = FakeAi(text='Sure:\n```json\n{"label": "spam", "score": 0.9}\n```')
        node = make_node("n", "ai", userPrompt="Classify", jsonMode=True, outputPath="label")
        result = await AiRunner().run(node, context, make_env(services, settings))
        assert result.output["response"] == "spam"

    @pytest.mark.asyncio
    async def test_json_mode_invalid(self, services, settings, context):
        services.ai = FakeAi(text="no json here")
        node = make_node("n", "ai", userPrompt="Classify", jsonMode=True)
        result = await AiRunner().run(node, context, make_env(services, settings))
        assert result.failed
        assert result.error_message.startswith("AI response is not valid JSON")

    @pytest.mark.asyncio
    async def test_requires_prompt_and_provider(self, settings, context):
        env = make_env(Services(), settings)
        result = await AiRunner().run(make_node("n", "ai", userPrompt="hi"), context, env)
        assert result.error_message == "No AI provider configured"

        env = make_env(Services(ai=FakeAi()), settings)
        result = await AiRunner().run(make_node("n", "ai"), context, env)
        assert result.error_message == "AI node requires 'userPrompt'"


# ─── Transform ───────────────────────────────────────────────────

@pytest.mark.unit
class TestTransformRunner:

    @pytest.mark.asyncio
    async def test_map_fields(self, env, context):
        node = make_node(
            "n",
            "transform",
            transformType="map_fields",
            sourceData="{{ trigger.users }}",
            fieldMappings=[
                {"sourceField": "name", "targetField": "profile.name", "transform": "uppercase"},
                {"sourceField": "age", "targetField": "years"},
            ],
        )
        result = await TransformRunner().run(node, context, env)
        assert result.output[0] == {"profile": {"name": "ADA"}, "years": 36}
        assert len(result.output) == 3

    @pytest.mark.asyncio
    async def test_map_with_item_templates(self, env, context):
        node = make_node(
            "n",
            "transform",
            transformType="map_fields",
            sourceData="{{ trigger.users }}",
            mapping={"label": "{{ index }}: {{ item.name }}"},
        )
        result = await TransformRunner().run(node, context, env)
        assert [row["label"] for row in result.output] == ["0: ada", "1: bob", "2: cy"]

    @pytest.mark.asyncio
    async def test_filter_array(self, env, context):
        node = make_node(
            "n",
            "transform",
            transformType="filter_array",
            sourceData="{{ trigger.users }}",
            filterExpression="{{ item.age }} >= 18",
        )
        result = await TransformRunner().run(node, context, env)
        assert [u["name"] for u in result.output] == ["ada", "cy"]

    @pytest.mark.asyncio
    async def test_sort_array_missing_keys_last(self, env, context):
        node = make_node(
            "n",
            "transform",
            transformType="sort_array",
            sourceData="{{ trigger.users }}",
            sortField="city",
            sortOrder="desc",
        )
        result = await TransformRunner().run(node, context, env)
        assert [u["name"] for u in result.output] == ["ada", "bob", "cy"]

    @pytest.mark.parametrize(
        "function,field,expected",
        [
            ("sum", "age", {"sum": 103}),
            ("avg", "age", {"avg": 103 / 3}),
            ("min", "age", {"min": 15}),
            ("max", "age", {"max": 52}),
            ("count", "city", {"count": 2}),
        ],
    )
    @pytest.mark.asyncio
    async def test_aggregate(self, env, context, function, field, expected):
        node = make_node(
            "n",
            "transform",
            transformType="aggregate",
            sourceData="{{ trigger.users }}",
            aggregateFunction=function,
            aggregateField=field,
        )
        result = await TransformRunner().run(node, context, env)
        assert result.output == expected

    @pytest.mark.asyncio
    async def test_array_transform_rejects_object(self, env, context):
        node = make_node("n", "transform", transformType="filter_array", sourceData="{{ fetch }}")
        result = await TransformRunner().run(node, context, env)
        assert result.error_message == "Transform 'filter_array' expects an array, got dict"

    @pytest.mark.asyncio
    async def test_format_date_and_number(self, env, context):
        date_node = make_node(
            "n", "transform", transformType="format", sourceData="2024-03-05T10:20:00Z",
            formatType="date", formatPattern="DD/MM/YYYY HH:mm",
        )
        result = await TransformRunner().run(date_node, context, env)
        assert result.output == "05/03/2024 10:20"

        number_node = make_node(
            "n", "transform", transformType="format", sourceData=1234567.891,
            formatType="number", formatPattern="#,##0.00",
        )
        result = await TransformRunner().run(number_node, context, env)
        assert result.output == "1,234,567.89"

    @pytest.mark.asyncio
    async def test_format_csv(self, env, context):
        node = make_node("n", "transform", transformType="format", sourceData="{{ trigger.users }}", formatType="csv")
        result = await TransformRunner().run(node, context, env)
        assert result.output.splitlines() == ["name,age,city", "ada,36,London", "bob,15,Leeds", "cy,52,"]

    @pytest.mark.asyncio
    async def test_parse(self, env, context):
        runner = TransformRunner()
        csv_result = await runner.run(
            make_node("n", "transform", transformType="parse", parseType="csv", sourceData="a,b\n1,2\n"),
            context,
            env,
        )
        assert csv_result.output == [{"a": "1", "b": "2"}]

        xml_result = await runner.run(
            make_node(
                "n", "transform", transformType="parse", parseType="xml",
                sourceData='<order id="9"><item>a</item><item>b</item></order>',
            ),
            context,
            env,
        )
        assert xml_result.output == {"order": {"@id": "9", "item": ["a", "b"]}}

        bad = await runner.run(
            make_node("n", "transform", transformType="parse", parseType="json", sourceData="{oops"),
            context,
            env,
        )
        assert bad.failed

    @pytest.mark.asyncio
    async def test_unknown_transform(self, env, context):
        result = await TransformRunner().run(make_node("n", "transform", transformType="zip"), context, env)
        assert result.error_message == "Unknown transform type: 'zip'"

    def test_helpers(self):
        assert to_strftime("YYYY-MM-DD") == "%Y-%m-%d"
        assert to_strftime("%d.%m") == "%d.%m"
        assert format_number("3", None) == "3"
        assert format_number(2.5, ".1f") == "2.5"


# ─── Loop (planning errors) ──────────────────────────────────────

@pytest.mark.unit
class TestLoopRunner:

    @pytest.mark.asyncio
    async def test_unknown_loop_type(self, env, context):
        result = await LoopRunner().run(make_node("l", "loop", loopType="forever"), context, env)
        assert result.error_message == "Unknown loop type: 'forever'"

    @pytest.mark.asyncio
    async def test_zero_step(self, env, context):
        node = make_node("l", "loop", loopType="count", startValue=0, endValue=3, stepValue=0)
        result = await LoopRunner().run(node, context, env)
        assert result.error_message == "Loop stepValue must not be zero"

    @pytest.mark.asyncio
    async def test_non_array_source(self, env, context):
        node = make_node("l", "loop", loopType="for_each", sourceVariable="trigger.age")
        result = await LoopRunner().run(node, context, env)
        assert result.error_message == "Loop source must be an array, got int"

    @pytest.mark.asyncio
    async def test_hard_cap_clamps_max_iterations(self, env, context, settings):
        count = settings.LOOP_HARD_MAX_ITERATIONS + 1
        node = make_node("l", "loop", loopType="count", endValue=count, maxIterations=count * 2)
        result = await LoopRunner().run(node, context, env)
        assert result.error_type == "SafetyLimitError"


# ─── Tool ────────────────────────────────────────────────────────

@pytest.mark.unit
class TestToolRunner:

    def test_coerce_inputs(self):
        schema = {
            "count": {"type": "number", "required": True, "min": 1, "max": 10},
            "dryRun": {"type": "boolean"},
            "emails": {"type": "list", "required": True},
        }
        result = coerce_inputs(schema, {"count": "3", "dryRun": "yes", "emails": "a@x, b@x", "extra": 1})
        assert result == {"count": 3, "dryRun": True, "emails": ["a@x", "b@x"]}

    @pytest.mark.parametrize(
        "inputs,message",
        [
            ({"emails": ["a"]}, 'Field "count" is required'),
            ({"count": "x", "emails": ["a"]}, 'Field "count" must be a number'),
            ({"count": 11, "emails": ["a"]}, 'Field "count" must be <= 10'),
            ({"count": 2, "emails": ""}, 'Field "emails" must include at least one item'),
        ],
    )
    def test_coerce_inputs_errors(self, inputs, message):
        schema = {"count": {"type": "number", "required": True, "max": 10}, "emails": {"type": "list", "required": True}}
        with pytest.raises(StepExecutionError, match=message):
            coerce_inputs(schema, inputs)

    @pytest.mark.asyncio
    async def test_input_mappings(self, env, context):
        node = make_node(
            "t",
            "tool",
            toolId="echo",
            inputMappings=[
                {"fieldId": "static", "value": 5},
                {"fieldName": "templated", "value": "{{ trigger.name }}"},
                {"fieldId": "fromNode", "value": {"fromNode": "fetch", "fieldName": "tags.1"}},
                {"fieldId": "ghost", "value": {"fromNode": "nowhere"}},
            ],
        )
        result = await ToolRunner().run(node, context, env)

        echoed = {"static": 5, "templated": "Ada", "fromNode": "b", "ghost": None}
        assert result.output == {"toolId": "echo", "toolOutputs": {"echo": echoed}, "echo": echoed}
        assert result.warnings == ("Unresolved reference to node 'nowhere'",)

    @pytest.mark.asyncio
    async def test_missing_tool_id(self, env, context):
        result = await ToolRunner().run(make_node("t", "tool"), context, env)
        assert result.error_message == "No tool selected for this node"

    @pytest.mark.asyncio
    async def test_tool_failure_is_not_retried(self, services, settings, context):
        calls = []

        def broken(inputs):
            calls.append(inputs)
            raise ConnectionError("tool host down")

        registry = LocalToolRegistry()
        registry.register("broken", broken)
        services.tools = registry
        result = await ToolRunner().run(make_node("t", "tool", toolId="broken"), context, make_env(services, settings))

        assert result.failed
        assert result.error_message == "Tool execution failed: tool host down"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_tool(self, env, context):
        result = await ToolRunner().run(make_node("t", "tool", toolId="nope"), context, env)
        assert result.error_message == "Tool execution failed: Tool 'nope' not found"
