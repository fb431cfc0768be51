"""Incremental parser for streamed tool-call arguments.

The model streams a call's argument object a few characters at a time.
:class:`IncrementalJsonParser` consumes those chunks and reports
``(path, chunk)`` updates as soon as new literal content for a path is
known, so callers can render arguments before the call is complete.

Paths use dotted keys and bracketed indices, e.g. ``files[2].name``.
Values are surfaced character-accurate: numbers are not parsed, string
escapes are translated, and ``\\uXXXX`` escapes are passed through
undecoded as a literal ``\\u`` followed by the hex digits.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from forkchat.exceptions import JsonParseError

if TYPE_CHECKING:
    from forkchat.tools.schema import Parameters, Property


_WHITESPACE = " \t\n\r"
_NUMBER_CHARS = "0123456789.eE+-"
_ESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "b": "\b",
    "f": "\f",
    "\\": "\\",
    "/": "/",
    '"': '"',
    "u": "\\u",
}
_LITERALS = {"t": "true", "f": "false", "n": "null"}


class _State(Enum):
    OBJECT_START = auto()
    OBJECT_KEY = auto()
    OBJECT_COLON = auto()
    OBJECT_VALUE = auto()
    OBJECT_COMMA = auto()
    ARRAY_START = auto()
    ARRAY_VALUE = auto()
    ARRAY_COMMA = auto()
    STRING = auto()
    STRING_ESCAPE = auto()
    NUMBER = auto()
    TRUE = auto()
    FALSE = auto()
    NULL = auto()


_LITERAL_STATES = {"true": _State.TRUE, "false": _State.FALSE, "null": _State.NULL}


@dataclass
class JsonUpdate:
    """New content for the value at ``path``.

    ``schema_type`` is the declared type of that value when the tool's
    schema describes it.
    """

    path: str
    chunk: str
    schema_type: str | None = None


@dataclass
class _Context:
    state: _State
    schema: Any = None
    # Object: schema of the value under the current key.
    value_schema: Any = None
    index: int = 0
    after_comma: bool = False
    literal: str = ""
    literal_pos: int = 0


@dataclass
class _Buffer:
    parts: list[str] = field(default_factory=list)
    schema_type: str | None = None


def _child_schema(schema: Any, key: str) -> Any:
    properties = getattr(schema, "properties", None) if schema is not None else None
    if not properties:
        return None
    return properties.get(key)


def _items_schema(schema: Any) -> Any:
    if schema is None or getattr(schema, "type", None) != "array":
        return None
    return getattr(schema, "items", None)


def _object_schema(schema: Any) -> Any:
    if schema is None or getattr(schema, "type", None) != "object":
        return None
    return schema


class IncrementalJsonParser:
    """Stateful chunk-by-chunk parser for one tool call's arguments.

    Construct one instance per tool call and feed it the call's chunks in
    order. An instance must not be shared between calls.
    """

    def __init__(self, schema: "Parameters | Property | None" = None):
        self.schema = schema
        self._stack: list[_Context] = []
        self._path: list[str] = []
        self._key: list[str] = []
        self._buffers: dict[str, _Buffer] = {}
        self._current_path = ""
        self._done = False
        self._failed: JsonParseError | None = None

    @property
    def done(self) -> bool:
        """True once the root object has been closed."""
        return self._done

    def process_chunk(self, chunk: str) -> list[JsonUpdate]:
        """Consume ``chunk`` and return the updates it produced.

        Raises:
            JsonParseError on malformed input; ``error.updates`` holds the
            updates flushed before the failure. The parser stays failed.
        """
        if self._failed is not None:
            raise JsonParseError("parser already failed", [])

        updates: list[JsonUpdate] = []
        try:
            i = 0
            while i < len(chunk):
                if self._consume(chunk[i], updates):
                    i += 1
        except JsonParseError as e:
            updates.extend(self._flush())
            e.updates = updates
            self._failed = e
            raise

        updates.extend(self._flush())
        return updates

    # Internals

    def _render_path(self) -> str:
        rendered = ""
        for segment in self._path:
            if rendered and not segment.startswith("["):
                rendered += "."
            rendered += segment
        return rendered

    def _append(self, text: str, schema: Any) -> None:
        path = self._render_path()
        buffer = self._buffers.get(path)
        if buffer is None:
            buffer = _Buffer(schema_type=getattr(schema, "type", None) if schema is not None else None)
            self._buffers[path] = buffer
        buffer.parts.append(text)

    def _flush(self) -> list[JsonUpdate]:
        flushed = [
            JsonUpdate(path=path, chunk="".join(buffer.parts), schema_type=buffer.schema_type)
            for path, buffer in self._buffers.items()
            if buffer.parts
        ]
        self._buffers = {}
        return flushed

    def _consume(self, char: str, updates: list[JsonUpdate]) -> bool:
        """Process one character. Returns False when it must be re-read."""
        top = self._stack[-1] if self._stack else None
        in_token = top is not None and top.state in (
            _State.STRING,
            _State.STRING_ESCAPE,
            _State.OBJECT_KEY,
            _State.NUMBER,
            _State.TRUE,
            _State.FALSE,
            _State.NULL,
        )
        if char in _WHITESPACE and not in_token:
            return True

        if top is None:
            if self._done:
                raise JsonParseError(f"unexpected character {char!r} after end of object")
            if char != "{":
                raise JsonParseError(f"expected '{{' but got {char!r}")
            self._stack.append(_Context(_State.OBJECT_START, schema=self.schema))
            return True

        path = self._render_path()
        if path != self._current_path:
            updates.extend(self._flush())
            self._current_path = path

        state = top.state

        if state == _State.OBJECT_START:
            if char == '"':
                top.state = _State.OBJECT_KEY
                self._key = []
            elif char == "}" and not top.after_comma:
                self._stack.pop()
                self._end_value(updates)
            else:
                raise JsonParseError(f"unexpected character {char!r} at object start")

        elif state == _State.OBJECT_KEY:
            if char == "\\":
                self._stack.append(_Context(_State.STRING_ESCAPE))
            elif char == '"':
                key = "".join(self._key)
                top.state = _State.OBJECT_COLON
                top.value_schema = _child_schema(top.schema, key)
                self._path.append(key)
            else:
                self._key.append(char)

        elif state == _State.OBJECT_COLON:
            if char != ":":
                raise JsonParseError(f"expected ':' but got {char!r}")
            top.state = _State.OBJECT_VALUE

        elif state == _State.OBJECT_VALUE:
            self._start_value(char, top.value_schema, "object value")

        elif state == _State.OBJECT_COMMA:
            if char == ",":
                top.state = _State.OBJECT_START
                top.after_comma = True
                top.value_schema = None
            elif char == "}":
                self._stack.pop()
                self._end_value(updates)
            else:
                raise JsonParseError(f"expected ',' or '}}' but got {char!r}")

        elif state in (_State.ARRAY_START, _State.ARRAY_VALUE):
            if char == "]" and state == _State.ARRAY_START:
                self._stack.pop()
                self._end_value(updates)
            else:
                top.state = _State.ARRAY_VALUE
                self._path.append(f"[{top.index}]")
                self._start_value(char, top.schema, "array value")

        elif state == _State.ARRAY_COMMA:
            if char == ",":
                top.state = _State.ARRAY_VALUE
            elif char == "]":
                self._stack.pop()
                self._end_value(updates)
            else:
                raise JsonParseError(f"expected ',' or ']' but got {char!r}")

        elif state == _State.STRING:
            if char == "\\":
                self._stack.append(_Context(_State.STRING_ESCAPE, schema=top.schema))
            elif char == '"':
                self._stack.pop()
                updates.extend(self._flush())
                self._end_value(updates)
            else:
                self._append(char, top.schema)

        elif state == _State.STRING_ESCAPE:
            escaped = _ESCAPES.get(char)
            if escaped is None:
                raise JsonParseError(f"invalid escape sequence '\\{char}'")
            self._stack.pop()
            owner = self._stack[-1]
            if owner.state == _State.OBJECT_KEY:
                self._key.append(escaped)
            else:
                self._append(escaped, owner.schema)

        elif state == _State.NUMBER:
            if char in _NUMBER_CHARS:
                self._append(char, top.schema)
            else:
                self._stack.pop()
                updates.extend(self._flush())
                self._end_value(updates)
                return False

        elif state in (_State.TRUE, _State.FALSE, _State.NULL):
            if char != top.literal[top.literal_pos]:
                raise JsonParseError(f"expected '{top.literal}' but got invalid character {char!r}")
            self._append(char, top.schema)
            top.literal_pos += 1
            if top.literal_pos == len(top.literal):
                self._stack.pop()
                updates.extend(self._flush())
                self._end_value(updates)

        return True

    def _start_value(self, char: str, schema: Any, where: str) -> None:
        if char == '"':
            self._stack.append(_Context(_State.STRING, schema=schema))
        elif char == "{":
            self._stack.append(_Context(_State.OBJECT_START, schema=_object_schema(schema)))
        elif char == "[":
            self._stack.append(_Context(_State.ARRAY_START, schema=_items_schema(schema)))
        elif char in _LITERALS:
            literal = _LITERALS[char]
            self._stack.append(
                _Context(_LITERAL_STATES[literal], schema=schema, literal=literal, literal_pos=1)
            )
            self._append(char, schema)
        elif char in "+-0123456789":
            self._stack.append(_Context(_State.NUMBER, schema=schema))
            self._append(char, schema)
        else:
            raise JsonParseError(f"unexpected character {char!r} in {where}")

    def _end_value(self, updates: list[JsonUpdate]) -> None:
        """Hand control back to the container of a value that just closed."""
        if not self._stack:
            self._done = True
            updates.extend(self._flush())
            return
        parent = self._stack[-1]
        self._path.pop()
        if parent.state == _State.OBJECT_VALUE:
            parent.state = _State.OBJECT_COMMA
        elif parent.state == _State.ARRAY_VALUE:
            parent.state = _State.ARRAY_COMMA
            parent.index += 1
