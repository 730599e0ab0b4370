"""Tagged-markup form of tool invocations.

Models either write tool calls directly into their answer as XML-like
blocks or return structured function calls, which the composer renders
into the same markup.  Either way the dispatch loop only has to scan
finished answer text::

    <add_notes>
      <track_id>2</track_id>
      <notes>
        <note><pitch>C4</pitch><start_beat>0</start_beat></note>
      </notes>
    </add_notes>

Blocks rooted at ``think`` or ``thinking`` are reasoning traces, not
calls.
"""

import logging
import re
from typing import Any
from xml.etree import ElementTree
from xml.sax.saxutils import escape, unescape

from kgagent.exceptions import MarkupError
from kgagent.streaming import ToolInvocation, new_call_id

logger = logging.getLogger(__name__)

THINKING_TAGS = frozenset({"think", "thinking"})
# Blocks whose bodies are free prose and may contain stray '<' or '&'.
FREE_TEXT_TAGS = frozenset({"attempt_completion", *THINKING_TAGS})

_BLOCK_PATTERN = re.compile(r"<([a-zA-Z_][a-zA-Z0-9_-]*)[^>]*>[\s\S]*?</\1>")
_TAG_PATTERN = re.compile(r"<([a-zA-Z_][a-zA-Z0-9_-]*)")
_NUMBER_PATTERN = re.compile(r"-?\d+(\.\d+)?")
_COMMENT_PATTERN = re.compile(r"<comment>([\s\S]*?)</comment>", re.IGNORECASE)

_QUOTE_ENTITIES = {'"': "&quot;", "'": "&apos;"}
_QUOTE_UNESCAPES = {v: k for k, v in _QUOTE_ENTITIES.items()}


def escape_text(value: str) -> str:
    return escape(value, _QUOTE_ENTITIES)


def unescape_text(value: str) -> str:
    return unescape(value, _QUOTE_UNESCAPES)


# ------------------------------------------------------------------
# Serialization
# ------------------------------------------------------------------

def _render_scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return escape_text(str(value))


def _render_argument(name: str, value: Any, depth: int) -> list[str]:
    indent = "  " * depth
    if isinstance(value, dict):
        lines = [f"{indent}<{name}>"]
        for key, item in value.items():
            lines.extend(_render_argument(key, item, depth + 1))
        lines.append(f"{indent}</{name}>")
        return lines
    if isinstance(value, (list, tuple)):
        lines = []
        for item in value:
            lines.extend(_render_argument(name, item, depth))
        return lines
    return [f"{indent}<{name}>{_render_scalar(value)}</{name}>"]


def serialize_invocation(invocation: ToolInvocation) -> str:
    """Render a tool invocation as a tagged block."""
    lines = [f"<{invocation.name}>"]
    for key, value in invocation.arguments.items():
        lines.extend(_render_argument(key, value, 1))
    lines.append(f"</{invocation.name}>")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------

def extract_blocks(text: str) -> list[str]:
    """Return every complete tagged block in ``text``, in order."""
    blocks = []
    for match in _BLOCK_PATTERN.finditer(text):
        block = match.group(0).strip()
        if block:
            blocks.append(block)
    return blocks


def block_name(block: str) -> str:
    match = _TAG_PATTERN.search(block)
    return match.group(1) if match else "unknown_tool"


def is_thinking_name(name: str) -> bool:
    return name.lower() in THINKING_TAGS


def is_thinking_block(block: str) -> bool:
    return is_thinking_name(block_name(block))


def extract_actionable_blocks(text: str) -> list[str]:
    """Blocks that should be executed: everything but thinking blocks."""
    return [b for b in extract_blocks(text) if not is_thinking_block(b)]


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------

def _cdata(text: str) -> str:
    return f"<![CDATA[{unescape_text(text)}]]>"


def _wrap_free_text(block: str) -> str:
    """Protect prose bodies of completion/thinking blocks with CDATA."""
    root = block_name(block)
    if root.lower() not in FREE_TEXT_TAGS:
        return block

    if root == "attempt_completion":
        match = _COMMENT_PATTERN.search(block)
        if match is None or "<![CDATA[" in match.group(1):
            return block
        return block[:match.start(1)] + _cdata(match.group(1)) + block[match.end(1):]

    match = re.match(rf"\s*<{root}>([\s\S]*?)</{root}>\s*$", block)
    if match is None or "<![CDATA[" in match.group(1):
        return block
    return block[:match.start(1)] + _cdata(match.group(1)) + block[match.end(1):]


def _is_singular_of(singular: str, plural: str) -> bool:
    if plural in (singular + "s", singular + "es"):
        return True
    if plural.endswith("ies") and singular.endswith("y"):
        return plural == singular[:-1] + "ies"
    return False


def _flatten_wrappers(parameters: dict[str, Any]) -> dict[str, Any]:
    # {"notes": {"note": [...]}} -> {"notes": [...]}
    flattened = {}
    for key, value in parameters.items():
        if isinstance(value, dict) and len(value) == 1:
            inner_key, inner_value = next(iter(value.items()))
            if _is_singular_of(inner_key, key) and isinstance(inner_value, (list, dict)):
                flattened[key] = inner_value if isinstance(inner_value, list) else [inner_value]
                continue
        flattened[key] = value
    return flattened


def _parse_value(element: ElementTree.Element) -> Any:
    if len(element):
        return _parse_parameters(element)
    text = (element.text or "").strip()
    if _NUMBER_PATTERN.fullmatch(text):
        return float(text) if "." in text else int(text)
    if text == "true":
        return True
    if text == "false":
        return False
    return text


def _parse_parameters(element: ElementTree.Element) -> dict[str, Any]:
    if is_thinking_name(element.tag) and not len(element):
        return {"content": (element.text or "").strip()}

    parameters: dict[str, Any] = {}
    repeated: set[str] = set()
    for child in element:
        value = _parse_value(child)
        if child.tag not in parameters:
            parameters[child.tag] = value
            continue
        if child.tag not in repeated:
            parameters[child.tag] = [parameters[child.tag]]
            repeated.add(child.tag)
        parameters[child.tag].append(value)
    return _flatten_wrappers(parameters)


def parse_block(block: str) -> ToolInvocation:
    """Parse a tagged block into a :class:`ToolInvocation`.

    Leaf values are whitespace-stripped and coerced: integer and decimal
    strings become ``int``/``float`` and ``true``/``false`` become
    ``bool``.  A string argument such as ``"42"`` therefore comes back
    as ``42`` after a serialize/parse round trip.  Repeated child tags
    become lists.

    Raises:
        MarkupError: If the block is not well-formed XML.
    """
    try:
        root = ElementTree.fromstring(_wrap_free_text(block))
    except ElementTree.ParseError as e:
        raise MarkupError(f"XML parsing error: {e}") from e
    return ToolInvocation(
        id=new_call_id(),
        name=root.tag,
        arguments=_parse_parameters(root),
    )
