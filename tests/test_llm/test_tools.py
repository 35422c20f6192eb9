"""
Tests for the Tool-Schema Bridge.

Covers:
1. ToolDefinition -> Anthropic / OpenAI schema, including enums
2. Translation-time rejection of unmapped parameter types
3. parse_tool_use on buffered responses (SDK objects and dicts)
4. ToolCallAccumulator — per-id buffering and malformed JSON degradation
5. ToolResultBlock shaping from executor outcomes
"""

from __future__ import annotations

import json
import logging
from types import SimpleNamespace

import pytest

from relay.exceptions import InvalidRequestError, UnsupportedToolParameterError
from relay.llm.tools import (
    ToolCallAccumulator,
    ToolDefinition,
    ToolParameter,
    parse_tool_use,
    to_provider_schema,
)
from relay.llm.types import ProviderKind, ToolOutcome, ToolResultBlock, ToolUseBlock


def _weather_tool() -> ToolDefinition:
    return ToolDefinition(
        name="get_weather",
        description="Current weather for a city",
        parameters=[
            ToolParameter("city", "string", "City name", required=True),
            ToolParameter("unit", "string", "Temperature unit", enum=["celsius", "fahrenheit"]),
            ToolParameter("days", "integer", "Forecast days", default=1),
        ],
    )


# ===========================================================================
# Schema Translation
# ===========================================================================

class TestToProviderSchema:
    """ToolDefinition -> vendor tool schema."""

    def test_anthropic_shape(self):
        [schema] = to_provider_schema([_weather_tool()], ProviderKind.ANTHROPIC)

        assert schema["name"] == "get_weather"
        assert schema["description"] == "Current weather for a city"
        input_schema = schema["input_schema"]
        assert input_schema["type"] == "object"
        assert input_schema["required"] == ["city"]
        assert input_schema["properties"]["unit"] == {
            "type": "string",
            "description": "Temperature unit",
            "enum": ["celsius", "fahrenheit"],
        }
        assert input_schema["properties"]["days"]["default"] == 1

    def test_openai_shape(self):
        [schema] = to_provider_schema([_weather_tool()], ProviderKind.OPENAI)

        assert schema["type"] == "function"
        function = schema["function"]
        assert function["name"] == "get_weather"
        assert function["parameters"]["required"] == ["city"]
        assert function["parameters"]["properties"]["city"]["type"] == "string"

    def test_array_gets_items(self):
        tool = ToolDefinition("tag", "Tag things", [ToolParameter("tags", "array")])
        [schema] = to_provider_schema([tool], ProviderKind.ANTHROPIC)
        assert schema["input_schema"]["properties"]["tags"]["items"] == {"type": "string"}

    def test_rejects_unmapped_type_at_translation(self):
        tool = ToolDefinition("when", "Schedule", [ToolParameter("at", "datetime")])
        with pytest.raises(UnsupportedToolParameterError) as exc_info:
            to_provider_schema([tool], ProviderKind.OPENAI)
        assert exc_info.value.parameter == "at"
        assert exc_info.value.param_type == "datetime"
        assert exc_info.value.dialect == "openai"

    def test_rejects_enum_on_non_string(self):
        tool = ToolDefinition("pick", "Pick", [ToolParameter("n", "integer", enum=["1", "2"])])
        with pytest.raises(UnsupportedToolParameterError):
            to_provider_schema([tool], ProviderKind.ANTHROPIC)

    def test_dialect_without_tools_rejected(self):
        with pytest.raises(InvalidRequestError):
            to_provider_schema([_weather_tool()], ProviderKind.GEMINI)

    def test_validate_arguments(self):
        tool = _weather_tool()
        assert tool.validate_arguments({"city": "Oslo", "unit": "celsius"}) == []
        errors = tool.validate_arguments({"unit": "kelvin"})
        assert "Missing required parameter: city" in errors
        assert any("kelvin" in e for e in errors)


# ===========================================================================
# Buffered Parsing
# ===========================================================================

class TestParseToolUse:
    """Tool-use blocks out of buffered responses."""

    def test_anthropic_round_trip_with_enum(self):
        """Definition -> schema -> synthetic tool_use -> identical name and input."""
        tool = _weather_tool()
        to_provider_schema([tool], ProviderKind.ANTHROPIC)
        call_input = {"city": "Oslo", "unit": "celsius"}
        response = SimpleNamespace(content=[
            SimpleNamespace(type="text", text="Let me check."),
            SimpleNamespace(type="tool_use", id="toolu_01", name="get_weather", input=call_input),
        ])

        [block] = parse_tool_use(response, ProviderKind.ANTHROPIC)

        assert block.id == "toolu_01"
        assert block.name == tool.name
        assert block.input == call_input
        assert tool.validate_arguments(block.input) == []

    def test_anthropic_dict_response(self):
        response = {"content": [{"type": "tool_use", "id": "t", "name": "n", "input": {"a": 1}}]}
        assert parse_tool_use(response, ProviderKind.ANTHROPIC) == [
            ToolUseBlock(id="t", name="n", input={"a": 1}),
        ]

    def test_openai_tool_calls(self):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[
            SimpleNamespace(
                id="call_1",
                function=SimpleNamespace(name="get_weather", arguments=json.dumps({"city": "Oslo"})),
            ),
        ]))])

        [block] = parse_tool_use(response, ProviderKind.OPENAI)
        assert block == ToolUseBlock(id="call_1", name="get_weather", input={"city": "Oslo"})

    def test_openai_malformed_arguments_degrade(self, caplog):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[
            SimpleNamespace(id="call_1", function=SimpleNamespace(name="f", arguments="{not json")),
        ]))])

        with caplog.at_level(logging.WARNING):
            [block] = parse_tool_use(response, ProviderKind.OPENAI)

        assert block.input == {}
        assert block.decode_error is not None
        assert "tool_arguments_decode_failed" in caplog.text

    def test_no_tool_calls(self):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=None))])
        assert parse_tool_use(response, ProviderKind.OPENAI) == []


# ===========================================================================
# Stream Accumulation
# ===========================================================================

class TestToolCallAccumulator:
    """Per-call-id buffering of streamed argument fragments."""

    def test_assembles_fragments_on_finish(self):
        acc = ToolCallAccumulator()
        acc.start("toolu_1", "get_weather")
        acc.append("toolu_1", '{"city": ')
        acc.append("toolu_1", '"Oslo"}')

        block = acc.finish("toolu_1")

        assert block == ToolUseBlock(id="toolu_1", name="get_weather", input={"city": "Oslo"})
        assert acc.pending_ids == []

    def test_interleaved_calls_kept_apart(self):
        acc = ToolCallAccumulator()
        acc.start("a", "first")
        acc.start("b", "second")
        acc.append("a", '{"x": 1')
        acc.append("b", '{"y": 2}')
        acc.append("a", "}")

        assert acc.finish("b").input == {"y": 2}
        assert acc.finish("a").input == {"x": 1}

    def test_empty_arguments_are_empty_object(self):
        acc = ToolCallAccumulator()
        acc.start("a", "noargs")
        block = acc.finish("a")
        assert block.input == {}
        assert block.decode_error is None

    def test_malformed_json_emits_empty_input(self, caplog):
        acc = ToolCallAccumulator()
        acc.start("a", "broken")
        acc.append("a", '{"city": "Os')

        with caplog.at_level(logging.WARNING):
            block = acc.finish("a")

        assert block.name == "broken"
        assert block.input == {}
        assert "invalid JSON" in block.decode_error

    def test_non_object_json_rejected(self):
        acc = ToolCallAccumulator()
        acc.start("a", "list")
        acc.append("a", "[1, 2]")
        assert acc.finish("a").input == {}

    def test_finish_unknown_id(self):
        assert ToolCallAccumulator().finish("missing") is None

    def test_finish_all_in_start_order(self):
        acc = ToolCallAccumulator()
        acc.start("b", "second")
        acc.start("a", "first")
        assert [block.id for block in acc.finish_all()] == ["b", "a"]


# ===========================================================================
# Result Shaping
# ===========================================================================

class TestToolResultBlock:
    """Executor outcomes -> result blocks."""

    def test_success(self):
        call = ToolUseBlock(id="toolu_1", name="f")
        block = ToolResultBlock.from_outcome(call, ToolOutcome(success=True, output="42"))
        assert block == ToolResultBlock(tool_use_id="toolu_1", content="42", is_error=False)

    def test_failure(self):
        call = ToolUseBlock(id="toolu_1", name="f")
        block = ToolResultBlock.from_outcome(call, ToolOutcome(success=False, error="timeout"))
        assert block.is_error is True
        assert block.content == "Error: timeout"
        assert block.to_anthropic()["is_error"] is True

    def test_openai_shape(self):
        block = ToolResultBlock(tool_use_id="call_1", content="ok")
        assert block.to_openai() == {"role": "tool", "tool_call_id": "call_1", "content": "ok"}
