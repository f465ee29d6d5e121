"""Pull-style streaming reader for ``multipart/form-data`` bodies.

Starlette's form parser spools every file part to a temporary file before the
endpoint runs, so a size limit could only be checked after the whole body was
received. This reader drives python-multipart's push parser one network chunk
at a time and exposes each part's payload as an async iterator, letting the
caller stream the file part straight into the size-bounded ingestor.
"""
from collections import deque
from typing import AsyncIterable, AsyncIterator, Dict, Optional, Tuple

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from upload_server.app.services.errors import MalformedUpload, PayloadTooLarge

PART_BEGIN = "part_begin"
HEADERS_FINISHED = "headers_finished"
PART_DATA = "part_data"
PART_END = "part_end"
END = "end"


def _decode(value: bytes, charset: str) -> str:
    try:
        return value.decode(charset)
    except (UnicodeDecodeError, LookupError):
        return value.decode("latin-1")


class FormPart:
    def __init__(self, reader: 'MultipartReader', name: str, filename: Optional[str],
                 content_type: Optional[str]):
        self._reader = reader
        self._done = False
        self.name = name
        self.filename = filename
        self.content_type = content_type

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield the part payload as it arrives. Ends at the part boundary."""
        while not self._done:
            kind, payload = await self._reader.next_event()
            if kind == PART_DATA:
                if payload:
                    yield payload
            elif kind == PART_END:
                self._done = True
            else:
                raise MalformedUpload(f"Unexpected {kind} inside part {self.name}")

    async def read(self, limit: int) -> bytes:
        data = bytearray()
        async for chunk in self.chunks():
            data += chunk
            if len(data) > limit:
                raise MalformedUpload(f"Field {self.name} exceeds {limit} bytes")
        return bytes(data)

    async def drain(self):
        async for _ in self.chunks():
            pass


class MultipartReader:
    def __init__(self, stream: AsyncIterable[bytes], content_type_header: Optional[str],
                 max_body_size: Optional[int] = None):
        content_type, params = parse_options_header(content_type_header or "")
        if content_type != b"multipart/form-data" or not params.get(b"boundary"):
            raise MalformedUpload("Expected a multipart/form-data body")

        self._charset = _decode(params.get(b"charset", b"utf-8"), "latin-1")
        self._stream = stream.__aiter__()
        self._events = deque()
        self._exhausted = False
        self._received = 0
        self._max_body_size = max_body_size

        self._header_field = b""
        self._header_value = b""
        self._headers: Dict[bytes, bytes] = {}

        callbacks = {
            "on_part_begin": self._on_part_begin,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_end": self._on_end,
        }
        self._parser = MultipartParser(params[b"boundary"], callbacks)

    # python-multipart callbacks, invoked synchronously from parser.write()

    def _on_part_begin(self):
        self._events.append((PART_BEGIN, None))

    def _on_part_data(self, data: bytes, start: int, end: int):
        self._events.append((PART_DATA, bytes(data[start:end])))

    def _on_part_end(self):
        self._events.append((PART_END, None))

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value += data[start:end]

    def _on_header_end(self):
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self):
        self._events.append((HEADERS_FINISHED, self._headers))
        self._headers = {}

    def _on_end(self):
        self._events.append((END, None))

    async def next_event(self) -> Tuple[str, object]:
        while not self._events:
            if self._exhausted:
                raise MalformedUpload("Multipart body ended unexpectedly")
            try:
                chunk = await self._stream.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                self._feed(None)
                continue
            self._received += len(chunk)
            if self._max_body_size is not None and self._received > self._max_body_size:
                raise PayloadTooLarge(f"Request body exceeds {self._max_body_size} bytes")
            self._feed(chunk)
        return self._events.popleft()

    def _feed(self, chunk: Optional[bytes]):
        try:
            if chunk is None:
                self._parser.finalize()
            elif chunk:
                self._parser.write(chunk)
        except MultipartParseError as e:
            raise MalformedUpload(f"Invalid multipart body: {e}") from e

    def _make_part(self, headers: Dict[bytes, bytes]) -> FormPart:
        disposition = headers.get(b"content-disposition")
        if disposition is None:
            raise MalformedUpload("Part without Content-Disposition header")
        _, options = parse_options_header(disposition)
        if b"name" not in options:
            raise MalformedUpload("Part without a field name")

        filename = None
        if b"filename" in options:
            filename = _decode(options[b"filename"], self._charset)
        content_type = None
        if b"content-type" in headers:
            content_type = _decode(headers[b"content-type"], "latin-1").strip() or None
        return FormPart(self, _decode(options[b"name"], self._charset), filename, content_type)

    async def parts(self) -> AsyncIterator[FormPart]:
        """Yield parts in body order. Unconsumed payload is skipped before moving on."""
        while True:
            kind, payload = await self.next_event()
            if kind == END:
                return
            if kind == HEADERS_FINISHED:
                part = self._make_part(payload)
                yield part
                await part.drain()
