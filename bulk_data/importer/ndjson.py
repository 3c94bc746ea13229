import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Union

from bulk_data.config import settings
from bulk_data.errors import BufferOverflowError, NDJSONError, NDJSONSyntaxError


class NDJSONParser:
    """
    Incremental NDJSON parser.

    Takes arbitrary chunks of an NDJSON document and returns one parsed JSON
    value for every complete line. Empty lines are skipped but still counted.
    Once an error is raised the parser stays failed and re-raises it.
    """

    def __init__(self, max_line_length: Optional[int] = None):
        self.max_line_length = max_line_length or settings.ndjson_max_line_length
        self.line = 0
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._error: Optional[NDJSONError] = None

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def _fail(self, error: NDJSONError) -> NDJSONError:
        self._buffer = ""
        self._error = error
        return error

    def _parse(self, text: str, line: int) -> Any:
        try:
            return json.loads(text)
        except ValueError as e:
            raise self._fail(NDJSONSyntaxError(
                f"Error parsing NDJSON on line {line}: {e}"
            ))

    def feed(self, chunk: Union[bytes, str]) -> List[Any]:
        """Consume a chunk and return the values of all completed lines."""
        if self._error:
            raise self._error

        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        # Protect against very long lines (possibly bad files without EOLs)
        if len(self._buffer) > self.max_line_length:
            raise self._fail(BufferOverflowError(
                f"Buffer overflow. No EOL found in {self.max_line_length} "
                "subsequent characters."
            ))

        out = []
        eol = self._buffer.find("\n")
        while eol > -1:
            text = self._buffer[:eol]
            self._buffer = self._buffer[eol + 1:]
            self.line += 1
            if text:
                out.append(self._parse(text, self.line))
            eol = self._buffer.find("\n")
        return out

    def close(self) -> List[Any]:
        """Flush the trailing line (if any) once the input is exhausted."""
        if self._error:
            raise self._error

        self._buffer += self._decoder.decode(b"", final=True)
        text, self._buffer = self._buffer, ""
        if not text:
            return []
        value = self._parse(text, self.line + 1)
        self.line += 1
        return [value]


async def iter_ndjson(
    chunks: AsyncIterable[Union[bytes, str]],
    parser: Optional[NDJSONParser] = None
) -> AsyncIterator[Any]:
    """Pipeline stage turning a stream of chunks into JSON values."""
    parser = parser or NDJSONParser()
    async for chunk in chunks:
        for value in parser.feed(chunk):
            yield value
    for value in parser.close():
        yield value
