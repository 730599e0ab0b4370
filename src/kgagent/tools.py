import inspect
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class ToolResult:
    """Outcome of one tool invocation as reported back to the agent."""

    success: bool
    result: str


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}

_ARGS_HEADER = re.compile(r"^\s*(Args|Arguments|Parameters):\s*$")
_ARG_LINE = re.compile(r"^\s+(\w+)(?:\s*\([^)]*\))?:\s*(.*)$")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Read Google-style ``Args:`` descriptions from a docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    descriptions: dict[str, str] = {}
    in_args = False
    current = None
    for line in doc.splitlines():
        if _ARGS_HEADER.match(line):
            in_args = True
            continue
        if not in_args:
            continue
        if line.strip() and not line.startswith((" ", "\t")):
            break
        match = _ARG_LINE.match(line)
        if match and match.group(1) not in descriptions:
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current and line.strip():
            descriptions[current] = f"{descriptions[current]} {line.strip()}".strip()
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in signature.parameters.items():
        annotation = param.annotation
        origin = getattr(annotation, "__origin__", annotation)
        properties[name] = {
            "type": _JSON_TYPES.get(origin, "string"),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    return {"type": "object", "properties": properties}, required


class Tool(BaseModel):
    """A callable the agent may invoke by name.

    Sync and async functions are both accepted; calling the tool always
    returns an awaitable :class:`ToolCallResult`.
    """

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def _make_tool(func: Callable, name: str | None, description: str | None) -> Tool:
    schema, required = _build_parameters_schema(func)
    schema["required"] = required
    doc = inspect.getdoc(func) or ""
    return Tool(
        func=func,
        name=name or func.__name__,
        description=description if description is not None else doc.split("\n\n")[0],
        parameters_schema=schema,
    )


def tool(func: Callable | None = None, *, name: str | None = None, description: str | None = None):
    """Decorate a function as a :class:`Tool`.

    Usable bare (``@tool``) or with arguments
    (``@tool(name="add_notes")``).
    """
    if func is not None:
        return _make_tool(func, name, description)

    def decorator(f: Callable) -> Tool:
        return _make_tool(f, name, description)
    return decorator
