import pytest

from bulk_data.errors import BufferOverflowError, NDJSONSyntaxError, ResourceValidationError
from bulk_data.importer.ndjson import NDJSONParser, iter_ndjson
from bulk_data.importer.validator import ResourceValidator


def parse(*chunks, max_line_length=None):
    parser = NDJSONParser(max_line_length)
    out = []
    for chunk in chunks:
        out.extend(parser.feed(chunk))
    out.extend(parser.close())
    return out


def test_parses_lines():
    assert parse('{"a":1}\n{"a":2}\n') == [{"a": 1}, {"a": 2}]


def test_trailing_newline_is_optional():
    assert parse('{"a":1}\n{"a":2}') == [{"a": 1}, {"a": 2}]


def test_empty_lines_are_skipped():
    assert parse('{"a":1}\n\n\n{"a":2}\n\n') == [{"a": 1}, {"a": 2}]


def test_whitespace_only_lines_are_not_empty():
    with pytest.raises(NDJSONSyntaxError, match="line 2"):
        parse('{"a":1}\n  \n{"a":2}\n')
    with pytest.raises(NDJSONSyntaxError, match="line 2"):
        parse('{"a":1}\n ')


def test_lines_split_across_chunks():
    assert parse('{"a"', ':1}\n{"a":', '2}') == [{"a": 1}, {"a": 2}]


def test_multibyte_characters_split_across_chunks():
    data = '{"name":"Zoë"}\n'.encode("utf-8")
    split = data.index(b"\xc3") + 1
    assert parse(data[:split], data[split:]) == [{"name": "Zoë"}]


def test_syntax_error_cites_line():
    with pytest.raises(NDJSONSyntaxError, match="line 1"):
        parse('{"a:1}\n{"a":2}')


def test_line_numbers_count_blank_lines():
    with pytest.raises(NDJSONSyntaxError, match="line 3"):
        parse('{"a":1}\n\n{bad}\n')


def test_buffer_overflow_before_any_record():
    parser = NDJSONParser(max_line_length=2)
    with pytest.raises(BufferOverflowError, match="No EOL found in 2 subsequent characters"):
        parser.feed('{"a":1}\n{"a":2}')


def test_failure_is_permanent():
    parser = NDJSONParser()
    with pytest.raises(NDJSONSyntaxError):
        parser.feed("nope\n")
    with pytest.raises(NDJSONSyntaxError):
        parser.feed('{"a":1}\n')
    with pytest.raises(NDJSONSyntaxError):
        parser.close()


async def test_iter_ndjson():
    async def chunks():
        yield b'{"a":1}\n{"a"'
        yield b':2}'

    assert [value async for value in iter_ndjson(chunks())] == [{"a": 1}, {"a": 2}]


def test_validator_accepts_matching_resources():
    validator = ResourceValidator("Patient")
    resource = {"resourceType": "Patient", "id": "1"}
    assert validator.validate(resource) is resource
    assert validator.validate({"resourceType": "Patient", "id": "2"})


@pytest.mark.parametrize("resource, message", [
    ({"id": "1"}, "No resourceType found for resource number 2."),
    ({"resourceType": "Patient"}, 'No "id" found for resource number 2.'),
    ({"resourceType": "Observation", "id": "1"},
     'Invalid resourceType found for resource number 2. Expecting "Patient".'),
])
def test_validator_rejects(resource, message):
    validator = ResourceValidator("Patient")
    validator.validate({"resourceType": "Patient", "id": "0"})
    with pytest.raises(ResourceValidationError) as info:
        validator.validate(resource)
    assert str(info.value) == message
