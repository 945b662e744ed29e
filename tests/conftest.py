import pytest
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from fastapi.testclient import TestClient

from api.routes import create_app
from api.services.audio import AudioService
from api.services.voice import VoiceService
from lib.config import Settings

BOUNDARY = 'voice-test-boundary'


def _build_multipart(parts, boundary=BOUNDARY):
    """parts: (name, filename or None, content type or None, data)"""
    body = b''
    for name, filename, content_type, data in parts:
        disposition = f'form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        body += f'--{boundary}\r\nContent-Disposition: {disposition}\r\n'.encode()
        if content_type:
            body += f'Content-Type: {content_type}\r\n'.encode()
        body += b'\r\n' + data + b'\r\n'
    body += f'--{boundary}--\r\n'.encode()
    return f'multipart/form-data; boundary={boundary}', body


def _as_stream(body: bytes, chunk_size: int = 7):
    async def stream():
        for i in range(0, len(body), chunk_size):
            yield body[i:i + chunk_size]
    return stream()


@pytest.fixture
def build_multipart():
    return _build_multipart


@pytest.fixture
def as_stream():
    return _as_stream


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        openai_api_key='sk-test',
        anthropic_api_key='sk-ant-test',
        todoist_token='todoist-test-token',
        telegram_bot_token='123456:test-token',
        telegram_chat_id='42',
    )


@pytest.fixture
def mock_transcriber():
    transcriber = MagicMock()
    transcriber.transcribe_audio = AsyncMock(return_value="Test transcript")
    return transcriber


@pytest.fixture
def mock_extractor():
    extractor = MagicMock()
    extractor.extract = AsyncMock()
    return extractor


@pytest.fixture
def mock_todoist():
    todoist = MagicMock()
    todoist.create_task = AsyncMock(return_value='task-1')
    todoist.get_open_tasks = AsyncMock(return_value=[])
    todoist.close_task = AsyncMock()
    return todoist


@pytest.fixture
def mock_telegram():
    telegram = MagicMock()
    telegram.send_message = AsyncMock()
    telegram.send_document = AsyncMock()
    return telegram


@pytest.fixture
def voice_service(settings, mock_transcriber, mock_extractor, mock_todoist, mock_telegram):
    return VoiceService(
        settings,
        audio_service=AudioService(max_bytes=4096, timeout=5),
        transcriber=mock_transcriber,
        extractor=mock_extractor,
        todoist=mock_todoist,
        telegram=mock_telegram,
    )


@pytest.fixture
def test_client(voice_service):
    app = create_app(voice_service)
    return TestClient(app, raise_server_exceptions=False)
