import pytest

from forkchat.exceptions import JsonParseError
from forkchat.llm.json_parser import IncrementalJsonParser, JsonUpdate
from forkchat.tools.schema import Tool


def _collect(updates: list[JsonUpdate]) -> dict[str, str]:
    values: dict[str, str] = {}
    for update in updates:
        values[update.path] = values.get(update.path, "") + update.chunk
    return values


def _feed(text: str, chunk_size: int | None = None) -> list[JsonUpdate]:
    parser = IncrementalJsonParser()
    if chunk_size is None:
        return parser.process_chunk(text)
    updates: list[JsonUpdate] = []
    for start in range(0, len(text), chunk_size):
        updates.extend(parser.process_chunk(text[start : start + chunk_size]))
    return updates


def test_flat_and_nested_values():
    updates = _feed('{"a":1,"b":{"c":"hi"}}')
    assert [(u.path, u.chunk) for u in updates] == [("a", "1"), ("b.c", "hi")]


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 7])
def test_chunking_does_not_change_the_result(chunk_size):
    text = '{"path": "src/main.py", "lines": [10, 20], "opts": {"dry": true, "mode": null}}'

    assert _collect(_feed(text, chunk_size)) == _collect(_feed(text))


def test_per_character_feed_streams_partial_strings():
    parser = IncrementalJsonParser()
    chunks = []
    for char in '{"msg":"hey"}':
        chunks.extend((u.path, u.chunk) for u in parser.process_chunk(char))

    assert chunks == [("msg", "h"), ("msg", "e"), ("msg", "y")]
    assert parser.done


def test_arrays_use_bracketed_indices():
    updates = _feed('{"files":[{"name":"a"},{"name":"b"}],"n":[1,2,3]}')

    assert _collect(updates) == {
        "files[0].name": "a",
        "files[1].name": "b",
        "n[0]": "1",
        "n[1]": "2",
        "n[2]": "3",
    }


def test_empty_containers_produce_no_updates():
    assert _feed('{"a":{},"b":[]}') == []
    assert _feed("{}") == []


def test_string_escapes_are_translated():
    updates = _feed(r'{"text":"line\nnext \"quoted\" tab\t slash\/ back\\"}')
    assert _collect(updates) == {"text": 'line\nnext "quoted" tab\t slash/ back\\'}


def test_unicode_escape_passes_through_undecoded():
    updates = _feed(r'{"name":"caf\u00e9"}')
    assert _collect(updates) == {"name": "caf\\u00e9"}


def test_whitespace_is_ignored_between_tokens_but_kept_in_strings():
    text = '{\n  "a" : "  spaced  " ,\n  "b" :\t-1.5e3 \n}'
    assert _collect(_feed(text)) == {"a": "  spaced  ", "b": "-1.5e3"}


def test_literals_are_reported_verbatim():
    assert _collect(_feed('{"t":true,"f":false,"n":null}')) == {
        "t": "true",
        "f": "false",
        "n": "null",
    }


def test_literal_mismatch_raises_with_flushed_updates():
    parser = IncrementalJsonParser()

    with pytest.raises(JsonParseError) as exc:
        parser.process_chunk('{"a":"ok","b":tx}')

    assert "expected 'true' but got invalid character 'x'" in str(exc.value)
    assert [(u.path, u.chunk) for u in exc.value.updates] == [("a", "ok"), ("b", "t")]

    with pytest.raises(JsonParseError):
        parser.process_chunk("}")


@pytest.mark.parametrize(
    "text",
    [
        '["a"]',
        '{"a":1,}',
        '{"a":[1,]}',
        '{"a" 1}',
        '{"a":1 "b":2}',
        '{"a":"\\x"}',
        '{"a":tr ue}',
        '{"a":@}',
    ],
)
def test_malformed_input_raises(text):
    with pytest.raises(JsonParseError):
        IncrementalJsonParser().process_chunk(text)


def test_content_after_root_object_is_rejected():
    parser = IncrementalJsonParser()
    assert _collect(parser.process_chunk('{"a":1} ')) == {"a": "1"}
    assert parser.done

    with pytest.raises(JsonParseError, match="after end of object"):
        parser.process_chunk("x")


def test_schema_types_are_attached_to_updates():
    schema = Tool.from_input_schema(
        "write",
        "",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "count": {"type": "integer"},
                "tags": {"type": "array", "items": {"type": "string"}},
                "meta": {"type": "object", "properties": {"force": {"type": "boolean"}}},
            },
        },
    ).parameters
    parser = IncrementalJsonParser(schema)

    updates = parser.process_chunk(
        '{"path":"a","count":2,"tags":["x"],"meta":{"force":false},"extra":"?"}'
    )

    assert {u.path: u.schema_type for u in updates} == {
        "path": "string",
        "count": "integer",
        "tags[0]": "string",
        "meta.force": "boolean",
        "extra": None,
    }
