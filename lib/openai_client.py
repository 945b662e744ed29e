import logging
import os
from typing import Optional

import openai
from openai import AsyncOpenAI

from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)


class OpenAIClient:
    def __init__(self, settings: Settings):
        self.client = AsyncOpenAI(
            api_key=settings.require('openai_api_key'),
            max_retries=0
        )
        self.model = settings.whisper_model

    async def transcribe_audio(self, audio_file_path: str, mimetype: str, filename: Optional[str] = None) -> str:
        """
        Transcribe audio file using OpenAI Whisper API
        """
        upload_name = filename or os.path.basename(audio_file_path)
        with open(audio_file_path, 'rb') as audio_file:
            data = audio_file.read()

        logger.info(f"Transcribing {upload_name} ({len(data)} bytes, {mimetype}) with {self.model}")
        try:
            transcript = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(upload_name, data, mimetype)
            )
        except openai.APIStatusError as e:
            raise UpstreamError(f"Whisper API failed: {e.response.text}")
        except openai.APIConnectionError as e:
            raise UpstreamError(f"Whisper API failed: {str(e)}")

        text = getattr(transcript, 'text', None)
        if not text:
            raise UpstreamError("Whisper API returned empty text")

        logger.info(f"Transcription complete: {text[:50]}...")
        return text
