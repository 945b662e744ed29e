import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from lib.anthropic_client import AnthropicClient
from lib.config import Settings
from lib.error_handler import MissingField
from lib.openai_client import OpenAIClient
from lib.telegram_client import TelegramClient
from lib.todoist_client import TodoistClient

from ..schemas import CompletionStatement, LongResult, QuickResult, TaskMatch
from .audio import AudioService

logger = logging.getLogger(__name__)

MATCH_CONFIDENCE_THRESHOLD = 0.55
TRANSCRIPT_FILENAME = 'transcript.txt'

QUICK_INSTRUCTION = (
    "Classify as task/reminder/note. Keep text concise in original language. "
    "datetime must be ISO 8601 or null."
)
LONG_INSTRUCTION = (
    "Summarize transcript in Russian (3-5 sentences). Extract actionable tasks and key points. "
    "language must be ru|az|en|mixed."
)
COMPLETION_INSTRUCTION = "Extract completion statement as JSON object with type='complete' and text."
MATCH_INSTRUCTION = (
    "Find best matching task id by semantic similarity to completion text. "
    "Return id or null and confidence in [0,1]."
)


def format_long_message(result: LongResult) -> str:
    """Render the chat summary of a long recording"""
    tasks = [f"{i}. {task}" for i, task in enumerate(result.tasks, 1)] or ["No tasks"]
    lines = [
        "📌 Summary:",
        result.summary,
        "",
        "🔑 Key points:",
        *[f"{i}. {point}" for i, point in enumerate(result.key_points, 1)],
        "",
        "✅ Tasks:",
        *tasks,
    ]
    return "\n".join(lines)


def format_note_message(result: QuickResult) -> str:
    return f"📝 Note ({result.language}):\n{result.text}"


class VoiceService:
    def __init__(self, settings: Settings, audio_service: Optional[AudioService] = None, transcriber=None,
                 extractor=None, todoist=None, telegram=None):
        self.settings = settings
        self.audio = audio_service or AudioService(
            max_bytes=settings.max_audio_bytes,
            timeout=settings.upload_timeout_seconds
        )
        self._transcriber = transcriber
        self._extractor = extractor
        self._todoist = todoist
        self._telegram = telegram
        logger.info("Voice service initialized")

    # Clients are built on first use; each handler checks the ones it may call before ingesting audio
    @property
    def transcriber(self) -> OpenAIClient:
        if self._transcriber is None:
            self._transcriber = OpenAIClient(self.settings)
        return self._transcriber

    @property
    def extractor(self) -> AnthropicClient:
        if self._extractor is None:
            self._extractor = AnthropicClient(self.settings)
        return self._extractor

    @property
    def todoist(self) -> TodoistClient:
        if self._todoist is None:
            self._todoist = TodoistClient(self.settings)
        return self._todoist

    @property
    def telegram(self) -> TelegramClient:
        if self._telegram is None:
            self._telegram = TelegramClient(self.settings)
        return self._telegram

    def _require_clients(self, *names: str) -> None:
        """Build the named clients now so missing credentials fail before any paid API call"""
        for name in names:
            getattr(self, name)

    async def transcribe_upload(self, headers: Mapping[str, str], stream: AsyncIterator[bytes],
                                accept_json: bool) -> str:
        """Ingest the recording, transcribe it and drop the temporary file"""
        audio = await self.audio.ingest(headers, stream, accept_json=accept_json)
        try:
            return await self.transcriber.transcribe_audio(
                audio.path,
                audio.mimetype or 'audio/m4a',
                audio.filename
            )
        finally:
            audio.discard()

    async def handle_quick(self, headers: Mapping[str, str], stream: AsyncIterator[bytes]) -> Dict[str, Any]:
        """Classify a short recording and file it as a task, reminder or note"""
        self._require_clients('transcriber', 'extractor', 'todoist', 'telegram')
        transcript = await self.transcribe_upload(headers, stream, accept_json=False)

        quick = await self.extractor.extract(
            instruction=QUICK_INSTRUCTION,
            user_prompt=f"Transcript:\n{transcript}",
            schema=QuickResult
        )
        logger.info(f"Quick capture classified as {quick.type} ({quick.language})")

        if quick.type == 'task':
            await self.todoist.create_task(quick.text)
        elif quick.type == 'reminder':
            if not quick.datetime:
                raise MissingField("Reminder requires datetime")
            await self.todoist.create_task(quick.text, due_datetime=quick.datetime)
        else:
            await self.telegram.send_message(format_note_message(quick))

        return {'ok': True, 'result': quick.model_dump()}

    async def handle_long(self, headers: Mapping[str, str], stream: AsyncIterator[bytes]) -> Dict[str, Any]:
        """Summarize a long recording to the chat and turn its action items into tasks"""
        self._require_clients('transcriber', 'extractor', 'telegram', 'todoist')
        transcript = await self.transcribe_upload(headers, stream, accept_json=True)

        structured = await self.extractor.extract(
            instruction=LONG_INSTRUCTION,
            user_prompt=f"Transcript:\n{transcript}",
            schema=LongResult
        )
        logger.info(f"Long recording summarized: {len(structured.tasks)} tasks, "
                    f"{len(structured.key_points)} key points")

        await self.telegram.send_message(format_long_message(structured))
        await self.telegram.send_document(transcript, TRANSCRIPT_FILENAME)

        created = 0
        for task in structured.tasks:
            await self.todoist.create_task(task)
            created += 1

        return {'ok': True, 'tasks_created': created}

    async def handle_complete(self, headers: Mapping[str, str], stream: AsyncIterator[bytes]) -> Dict[str, Any]:
        """Close the open task that best matches a spoken completion statement"""
        self._require_clients('transcriber', 'extractor', 'todoist')
        transcript = await self.transcribe_upload(headers, stream, accept_json=True)

        completion = await self.extractor.extract(
            instruction=COMPLETION_INSTRUCTION,
            user_prompt=f"Transcript:\n{transcript}",
            schema=CompletionStatement
        )

        tasks = await self.todoist.get_open_tasks()

        match = await self.extractor.extract(
            instruction=MATCH_INSTRUCTION,
            user_prompt=f"Completion text:\n{completion.text}\n\nOpen tasks:\n{self._format_tasks(tasks)}",
            schema=TaskMatch
        )
        logger.info(f"Best task match: {match.id} (confidence {match.confidence})")

        if not match.id or match.confidence < MATCH_CONFIDENCE_THRESHOLD:
            return {'ok': False, 'error': "No match"}

        await self.todoist.close_task(match.id)
        return {'ok': True, 'closed_task_id': match.id, 'confidence': match.confidence}

    def _format_tasks(self, tasks: List[Dict[str, str]]) -> str:
        return json.dumps(
            [{'id': task['id'], 'content': task['content']} for task in tasks],
            ensure_ascii=False,
            separators=(',', ':')
        )
