import pytest

from kgagent.tools import (
    Tool,
    ToolCallResult,
    ToolResult,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)


# ---------------------------------------------------------------------------
# Schema generation (_build_parameters_schema)
# ---------------------------------------------------------------------------


class TestBuildParametersSchema:
    def test_python_types_map_to_json_schema_types(self):
        def func(a: str, b: int, c: float, d: bool, e: list, f: dict):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["a"]["type"] == "string"
        assert schema["properties"]["b"]["type"] == "integer"
        assert schema["properties"]["c"]["type"] == "number"
        assert schema["properties"]["d"]["type"] == "boolean"
        assert schema["properties"]["e"]["type"] == "array"
        assert schema["properties"]["f"]["type"] == "object"

    def test_generic_aliases_use_their_origin(self):
        def func(ids: list[int], extra: dict[str, str]):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["ids"]["type"] == "array"
        assert schema["properties"]["extra"]["type"] == "object"

    def test_optional_params_not_required(self):
        def func(name: str, greeting: str = "hi"):
            pass

        _, required = _build_parameters_schema(func)
        assert required == ["name"]

    def test_unannotated_param_defaults_to_string(self):
        def func(x):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["x"]["type"] == "string"


# ---------------------------------------------------------------------------
# Docstring param description parsing (_parse_param_descriptions)
# ---------------------------------------------------------------------------


class TestParseParamDescriptions:
    def test_google_style(self):
        def func(name: str, age: int):
            """Do something.

            Args:
                name: The user's name.
                age: The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_google_style_with_type_in_docstring(self):
        def func(name, age):
            """Do something.

            Args:
                name (str): The user's name.
                age (int): The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_multiline_description(self):
        def func(track_id: int):
            """Read a track.

            Args:
                track_id: The track to read,
                    counted from one.
            """

        assert _parse_param_descriptions(func) == {
            "track_id": "The track to read, counted from one.",
        }

    def test_section_after_args_ends_parsing(self):
        def func(x: int):
            """Do something.

            Args:
                x: A number.

            Returns:
                Something else.
            """

        assert _parse_param_descriptions(func) == {"x": "A number."}

    def test_no_docstring(self):
        def func(x: str):
            pass

        assert _parse_param_descriptions(func) == {}


# ---------------------------------------------------------------------------
# @tool decorator
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def read_music(track_id: int):
            """Read the notes of a track.

            Args:
                track_id: Track to read.
            """

        assert isinstance(read_music, Tool)
        assert read_music.name == "read_music"
        assert read_music.description == "Read the notes of a track."
        assert read_music.parameters_schema["required"] == ["track_id"]

    def test_decorator_with_arguments(self):
        @tool(name="add_notes", description="Add notes to a track.")
        def _add(track_id: int):
            pass

        assert _add.name == "add_notes"
        assert _add.description == "Add notes to a track."

    def test_model_dump_is_function_schema(self, sample_tool):
        dumped = sample_tool.model_dump()
        assert dumped["type"] == "function"
        assert dumped["function"]["name"] == "greet"
        assert dumped["function"]["parameters"]["properties"]["name"]["type"] == "string"

    @pytest.mark.asyncio
    async def test_sync_call(self, sample_tool):
        result = await sample_tool(name="Ada")
        assert result == ToolCallResult(tool_name="greet", output="Hello Ada")

    @pytest.mark.asyncio
    async def test_async_call(self, sample_async_tool):
        result = await sample_async_tool(name="Ada")
        assert result.output == "Hello async Ada"


def test_tool_result_fields():
    result = ToolResult(success=False, result="nope")
    assert (result.success, result.result) == (False, "nope")
