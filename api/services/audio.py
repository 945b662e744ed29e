import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Mapping, Optional

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from lib.error_handler import (
    InvalidPayload,
    PayloadTooLarge,
    UnsupportedMediaType,
    UploadTimeout,
)

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 25 * 1024 * 1024
UPLOAD_TIMEOUT_SECONDS = 25
UPLOAD_FIELD = 'file'
DEFAULT_MIMETYPE = 'audio/m4a'

ALLOWED_MIME_TYPES = frozenset({
    'audio/x-m4a',
    'audio/mp4',
    'audio/m4a',
    'audio/wav',
    'audio/x-wav',
    'audio/wave',
    'audio/x-pn-wav',
    'audio/caf',
    'audio/x-caf',
})


@dataclass
class AudioHandle:
    """A recording spooled to a temporary file, owned by a single request"""

    path: str
    mimetype: str
    filename: Optional[str]
    size: int

    def discard(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


def normalize_headers(headers) -> Dict[str, str]:
    """Collapse any header container into a lowercase-keyed dict, keeping the first value of repeated headers"""
    items = headers.items() if hasattr(headers, 'items') else headers
    normalized = {}
    for key, value in items:
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        if value is None:
            continue
        normalized.setdefault(str(key).lower(), str(value))
    return normalized


def _temp_audio_path() -> str:
    return os.path.join(tempfile.gettempdir(), f"audio-{uuid.uuid4().hex}")


def _declared_type(value: Optional[str]) -> str:
    if not value:
        return ''
    return value.split(';', 1)[0].strip().lower()


def decode_base64_audio(value: str) -> bytes:
    """Decode base64 audio, accepting an optional data URI prefix, url-safe alphabet and missing padding"""
    if 'base64,' in value:
        value = value.rsplit('base64,', 1)[-1]
    value = ''.join(value.split()).translate(str.maketrans('-_', '+/'))
    value += '=' * (-len(value) % 4)
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError):
        raise InvalidPayload("Invalid base64")


class _MultipartUpload:
    """Feeds a multipart body through an incremental parser and spools the upload part to disk"""

    def __init__(self, boundary: bytes, max_bytes: int):
        self.max_bytes = max_bytes
        self.handle: Optional[AudioHandle] = None
        self._events = []
        self._headers: Dict[bytes, bytes] = {}
        self._header_field = b''
        self._header_value = b''
        self._file = None
        self._path = None
        self._mimetype = ''
        self._filename = None
        self._size = 0
        self.parser = MultipartParser(boundary, callbacks={
            'on_part_begin': lambda: self._events.append(('part_begin', b'')),
            'on_part_data': lambda data, start, end: self._events.append(('part_data', data[start:end])),
            'on_part_end': lambda: self._events.append(('part_end', b'')),
            'on_header_field': lambda data, start, end: self._events.append(('header_field', data[start:end])),
            'on_header_value': lambda data, start, end: self._events.append(('header_value', data[start:end])),
            'on_header_end': lambda: self._events.append(('header_end', b'')),
            'on_headers_finished': lambda: self._events.append(('headers_finished', b'')),
        })

    def feed(self, chunk: bytes) -> None:
        try:
            self.parser.write(chunk)
        except MultipartParseError:
            raise InvalidPayload("Invalid multipart payload")
        self._process_events()

    def finish(self) -> Optional[AudioHandle]:
        try:
            self.parser.finalize()
        except MultipartParseError:
            raise InvalidPayload("Invalid multipart payload")
        self._process_events()
        if self._file is not None:
            # the upload part never reached its closing boundary
            raise InvalidPayload("Invalid multipart payload")
        return self.handle

    def discard(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        if self._path:
            try:
                os.remove(self._path)
            except FileNotFoundError:
                pass
        self.handle = None

    def _process_events(self) -> None:
        events, self._events = self._events, []
        for kind, data in events:
            if kind == 'part_begin':
                self._headers = {}
                self._header_field = b''
                self._header_value = b''
            elif kind == 'header_field':
                self._header_field += data
            elif kind == 'header_value':
                self._header_value += data
            elif kind == 'header_end':
                self._headers[self._header_field.lower()] = self._header_value
                self._header_field = b''
                self._header_value = b''
            elif kind == 'headers_finished':
                self._start_part()
            elif kind == 'part_data':
                if self._file is not None:
                    self._write(data)
            elif kind == 'part_end':
                if self._file is not None:
                    self._file.close()
                    self._file = None
                    self.handle = AudioHandle(self._path, self._mimetype, self._filename, self._size)

    def _start_part(self) -> None:
        _, options = parse_options_header(self._headers.get(b'content-disposition', b''))
        name = options.get(b'name', b'').decode('utf-8', 'replace')
        filename = options.get(b'filename')

        # plain form fields, foreign file fields and extra uploads are drained unread
        if filename is None or name != UPLOAD_FIELD or self._path is not None:
            return

        mimetype = _declared_type(self._headers.get(b'content-type', b'').decode('latin-1'))
        if not mimetype or mimetype not in ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType("Unsupported file type")

        self._mimetype = mimetype
        self._filename = filename.decode('utf-8', 'replace') or None
        self._path = _temp_audio_path()
        self._file = open(self._path, 'wb')

    def _write(self, data: bytes) -> None:
        self._size += len(data)
        if self._size > self.max_bytes:
            self.discard()
            raise PayloadTooLarge("Audio too large")
        self._file.write(data)


class AudioService:
    def __init__(self, max_bytes: int = MAX_FILE_SIZE, timeout: float = UPLOAD_TIMEOUT_SECONDS):
        self.max_bytes = max_bytes
        self.timeout = timeout

    async def ingest(self, headers: Mapping[str, str], stream: AsyncIterator[bytes], accept_json: bool = False) -> AudioHandle:
        """
        Receive an uploaded recording and spool it to a temporary file.
        headers must already be normalized; the caller owns the returned file.
        """
        content_type = headers.get('content-type', '')
        if accept_json and 'application/json' in content_type:
            receive = self._read_json(stream)
        else:
            receive = self._read_multipart(content_type, stream)

        try:
            handle = await asyncio.wait_for(receive, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Upload did not complete within {self.timeout}s")
            raise UploadTimeout("Upload timeout")

        logger.info(f"Audio received: {handle.size} bytes ({handle.mimetype})")
        return handle

    async def _read_multipart(self, content_type: str, stream: AsyncIterator[bytes]) -> AudioHandle:
        if 'multipart/form-data' not in content_type:
            raise InvalidPayload("Invalid multipart payload")
        _, options = parse_options_header(content_type)
        boundary = options.get(b'boundary')
        if not boundary:
            raise InvalidPayload("Invalid multipart payload")

        upload = _MultipartUpload(boundary, self.max_bytes)
        try:
            async for chunk in stream:
                if chunk:
                    upload.feed(chunk)
            handle = upload.finish()
        except BaseException:
            upload.discard()
            raise

        if handle is None:
            raise InvalidPayload("Missing file")
        return handle

    async def _read_json(self, stream: AsyncIterator[bytes]) -> AudioHandle:
        # base64 inflates by 4/3 and line wrapping or escaped slashes add more;
        # the decoded size below is the real limit
        max_body = self.max_bytes * 2 + 64 * 1024
        chunks = []
        received = 0
        async for chunk in stream:
            received += len(chunk)
            if received > max_body:
                raise PayloadTooLarge("Audio too large")
            chunks.append(chunk)
        raw = b''.join(chunks)

        if not raw.strip():
            raise InvalidPayload("Missing body")
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidPayload("Invalid JSON")
        if not isinstance(payload, dict):
            raise InvalidPayload("Missing audio_base64")

        encoded = payload.get('audio_base64')
        if not encoded or not isinstance(encoded, str):
            raise InvalidPayload("Missing audio_base64")

        mimetype = payload.get('mimetype') or DEFAULT_MIMETYPE
        if not isinstance(mimetype, str) or _declared_type(mimetype) not in ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType("Unsupported file type")
        filename = payload.get('filename')
        if not isinstance(filename, str) or not filename:
            filename = None

        audio = decode_base64_audio(encoded)
        if not audio:
            raise InvalidPayload("Empty audio")
        if len(audio) > self.max_bytes:
            raise PayloadTooLarge("Audio too large")

        path = _temp_audio_path()
        with open(path, 'wb') as audio_file:
            audio_file.write(audio)

        return AudioHandle(path, _declared_type(mimetype), filename, len(audio))
