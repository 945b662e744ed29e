import asyncio
import base64
import json
import os

import pytest

from api.services.audio import AudioService, decode_base64_audio, normalize_headers
from lib.error_handler import InvalidPayload, PayloadTooLarge, UnsupportedMediaType, UploadTimeout

AUDIO = bytes(range(256)) * 4


@pytest.fixture
def temp_path(monkeypatch, tmp_path):
    path = str(tmp_path / 'upload')
    monkeypatch.setattr('api.services.audio._temp_audio_path', lambda: path)
    return path


def json_stream(as_stream, payload):
    return as_stream(json.dumps(payload).encode(), chunk_size=64)


@pytest.mark.asyncio
async def test_multipart_upload_is_spooled_to_disk(build_multipart, as_stream):
    content_type, body = build_multipart([('file', 'memo.m4a', 'audio/m4a', AUDIO)])
    service = AudioService(max_bytes=4096)

    handle = await service.ingest({'content-type': content_type}, as_stream(body))

    try:
        assert handle.size == len(AUDIO)
        assert handle.mimetype == 'audio/m4a'
        assert handle.filename == 'memo.m4a'
        with open(handle.path, 'rb') as f:
            assert f.read() == AUDIO
    finally:
        handle.discard()
    assert not os.path.exists(handle.path)


@pytest.mark.asyncio
async def test_multipart_upload_exactly_at_limit(build_multipart, as_stream):
    content_type, body = build_multipart([('file', 'memo.wav', 'audio/wav', AUDIO)])
    service = AudioService(max_bytes=len(AUDIO))

    handle = await service.ingest({'content-type': content_type}, as_stream(body, chunk_size=100))

    assert handle.size == len(AUDIO)
    handle.discard()


@pytest.mark.asyncio
async def test_other_file_fields_are_drained(build_multipart, as_stream):
    content_type, body = build_multipart([
        ('note', None, None, b'just a form field'),
        ('attachment', 'photo.jpg', 'image/jpeg', b'\xff\xd8\xff'),
        ('file', 'memo.caf', 'audio/x-caf', AUDIO),
        ('file', 'second.caf', 'audio/x-caf', b'ignored'),
    ])
    service = AudioService(max_bytes=4096)

    handle = await service.ingest({'content-type': content_type}, as_stream(body))

    assert handle.filename == 'memo.caf'
    assert handle.size == len(AUDIO)
    handle.discard()


@pytest.mark.asyncio
async def test_upload_over_limit_fails_mid_stream(build_multipart, as_stream, temp_path):
    content_type, body = build_multipart([('file', 'memo.m4a', 'audio/m4a', AUDIO + b'x')])
    service = AudioService(max_bytes=len(AUDIO))

    with pytest.raises(PayloadTooLarge, match="Audio too large"):
        await service.ingest({'content-type': content_type}, as_stream(body, chunk_size=64))

    assert not os.path.exists(temp_path)


@pytest.mark.parametrize('mimetype', ['audio/mpeg', 'video/mp4', 'text/plain', None])
@pytest.mark.asyncio
async def test_disallowed_mimetype_is_rejected(build_multipart, as_stream, mimetype):
    content_type, body = build_multipart([('file', 'memo.bin', mimetype, AUDIO)])
    service = AudioService()

    with pytest.raises(UnsupportedMediaType, match="Unsupported file type"):
        await service.ingest({'content-type': content_type}, as_stream(body))


@pytest.mark.asyncio
async def test_missing_file_part(build_multipart, as_stream):
    content_type, body = build_multipart([('file', None, None, b'not a file upload')])

    with pytest.raises(InvalidPayload, match="Missing file"):
        await AudioService().ingest({'content-type': content_type}, as_stream(body))


@pytest.mark.asyncio
async def test_non_multipart_body_is_rejected(as_stream):
    with pytest.raises(InvalidPayload, match="Invalid multipart payload"):
        await AudioService().ingest({'content-type': 'text/plain'}, as_stream(b'hello'))


@pytest.mark.asyncio
async def test_json_body_rejected_when_handler_is_upload_only(as_stream):
    stream = json_stream(as_stream, {'audio_base64': base64.b64encode(AUDIO).decode()})

    with pytest.raises(InvalidPayload, match="Invalid multipart payload"):
        await AudioService().ingest({'content-type': 'application/json'}, stream, accept_json=False)


@pytest.mark.asyncio
async def test_slow_upload_times_out(build_multipart, temp_path):
    content_type, body = build_multipart([('file', 'memo.m4a', 'audio/m4a', AUDIO)])

    async def stalled_stream():
        yield body[:-100]
        await asyncio.sleep(1)
        yield body[-100:]

    service = AudioService(timeout=0.05)
    with pytest.raises(UploadTimeout, match="Upload timeout"):
        await service.ingest({'content-type': content_type}, stalled_stream())

    assert not os.path.exists(temp_path)


@pytest.mark.asyncio
async def test_json_audio_data_uri_matches_plain_base64(as_stream):
    encoded = base64.b64encode(AUDIO).decode()
    service = AudioService()
    headers = {'content-type': 'application/json'}

    plain = await service.ingest(headers, json_stream(as_stream, {'audio_base64': encoded}), accept_json=True)
    prefixed = await service.ingest(
        headers,
        json_stream(as_stream, {'audio_base64': f'data:audio/m4a;base64,{encoded}', 'filename': 'memo.m4a'}),
        accept_json=True
    )

    try:
        with open(plain.path, 'rb') as a, open(prefixed.path, 'rb') as b:
            assert a.read() == b.read() == AUDIO
        assert plain.mimetype == 'audio/m4a'
        assert plain.filename is None
        assert prefixed.filename == 'memo.m4a'
        assert prefixed.size == len(AUDIO)
    finally:
        plain.discard()
        prefixed.discard()


@pytest.mark.parametrize('body, message', [
    (b'', "Missing body"),
    (b'{not json', "Invalid JSON"),
    (b'[1, 2, 3]', "Missing audio_base64"),
    (b'{"audio_base64": 12}', "Missing audio_base64"),
    (b'{"audio_base64": ""}', "Missing audio_base64"),
    (b'{"audio_base64": "data:audio/m4a;base64,"}', "Empty audio"),
])
@pytest.mark.asyncio
async def test_invalid_json_payloads(as_stream, body, message):
    with pytest.raises(InvalidPayload, match=message):
        await AudioService().ingest({'content-type': 'application/json'}, as_stream(body), accept_json=True)


@pytest.mark.asyncio
async def test_json_audio_over_limit(as_stream):
    stream = json_stream(as_stream, {'audio_base64': base64.b64encode(AUDIO).decode()})

    with pytest.raises(PayloadTooLarge):
        await AudioService(max_bytes=len(AUDIO) - 1).ingest(
            {'content-type': 'application/json'}, stream, accept_json=True
        )


@pytest.mark.asyncio
async def test_json_audio_line_wrapped_at_limit(as_stream):
    audio = b'\x01' * 3_000_000
    stream = json_stream(as_stream, {'audio_base64': base64.encodebytes(audio).decode()})
    service = AudioService(max_bytes=len(audio))

    handle = await service.ingest({'content-type': 'application/json'}, stream, accept_json=True)

    try:
        assert handle.size == len(audio)
    finally:
        handle.discard()


@pytest.mark.asyncio
async def test_json_audio_with_escaped_slashes(as_stream):
    audio = b'\xff\xfe' * 1024
    encoded = base64.b64encode(audio).decode()
    assert '/' in encoded
    body = json.dumps({'audio_base64': encoded}).replace('/', '\\/').encode()
    service = AudioService(max_bytes=len(audio))

    handle = await service.ingest({'content-type': 'application/json'}, as_stream(body, chunk_size=64),
                                  accept_json=True)

    try:
        with open(handle.path, 'rb') as f:
            assert f.read() == audio
    finally:
        handle.discard()


@pytest.mark.asyncio
async def test_json_audio_with_disallowed_mimetype(as_stream):
    stream = json_stream(as_stream, {'audio_base64': base64.b64encode(AUDIO).decode(), 'mimetype': 'audio/ogg'})

    with pytest.raises(UnsupportedMediaType):
        await AudioService().ingest({'content-type': 'application/json'}, stream, accept_json=True)


def test_decode_base64_tolerates_missing_padding_and_whitespace():
    encoded = base64.b64encode(b'abcd1').decode()
    assert decode_base64_audio(encoded.rstrip('=')) == b'abcd1'
    assert decode_base64_audio(encoded[:4] + '\n' + encoded[4:]) == b'abcd1'


def test_normalize_headers_lowercases_and_keeps_first_value():
    headers = normalize_headers([
        ('Content-Type', 'multipart/form-data; boundary=x'),
        ('X-Forwarded-For', ['1.1.1.1', '2.2.2.2']),
        ('content-type', 'application/json'),
    ])

    assert headers == {
        'content-type': 'multipart/form-data; boundary=x',
        'x-forwarded-for': '1.1.1.1',
    }
    assert normalize_headers({'Content-Length': 10}) == {'content-length': '10'}
