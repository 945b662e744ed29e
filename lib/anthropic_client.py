import json
import logging
from datetime import datetime
from typing import Type, TypeVar
from zoneinfo import ZoneInfo

import anthropic
from anthropic import AsyncAnthropic
from pydantic import BaseModel, ValidationError

from lib.config import Settings
from lib.error_handler import SchemaValidationError, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)

MAX_ATTEMPTS = 2


def format_local_now(timezone_name: str, now: datetime = None) -> str:
    """Human-readable wall clock, e.g. 'Monday, October 19, 2026 at 19:27:05 +04'"""
    now = now or datetime.now(ZoneInfo(timezone_name))
    return f"{now.strftime('%A, %B')} {now.day}, {now.year} at {now.strftime('%H:%M:%S %Z')}"


def extract_text(content) -> str:
    """Join the text blocks of a Messages API response, ignoring every other block type"""
    return "\n".join(
        block.text for block in content or []
        if getattr(block, 'type', None) == 'text'
    ).strip()


class AnthropicClient:
    def __init__(self, settings: Settings):
        self.client = AsyncAnthropic(
            api_key=settings.require('anthropic_api_key'),
            max_retries=0
        )
        self.model = settings.anthropic_model
        self.max_tokens = settings.anthropic_max_tokens
        self.timezone = settings.local_timezone

    def _build_system_prompt(self, instruction: str) -> str:
        return (
            "Return ONLY valid JSON without markdown. "
            f"Current datetime in {self.timezone}: {format_local_now(self.timezone)}. "
            f"{instruction}"
        )

    async def extract(self, instruction: str, user_prompt: str, schema: Type[T]) -> T:
        """
        Ask Claude for a JSON object and validate it against schema.
        A response that fails parsing or validation is retried once; HTTP failures are not.
        """
        system_prompt = self._build_system_prompt(instruction)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            logger.info(f"Requesting {schema.__name__} from {self.model} (attempt {attempt})")
            try:
                response = await self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system_prompt,
                    messages=[
                        {"role": "user", "content": user_prompt}
                    ]
                )
            except anthropic.APIStatusError as e:
                raise UpstreamError(f"Anthropic API failed: {e.response.text}")
            except anthropic.APIConnectionError as e:
                raise UpstreamError(f"Anthropic API failed: {str(e)}")

            raw_text = extract_text(response.content)
            try:
                return schema.model_validate(json.loads(raw_text))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Claude returned invalid {schema.__name__} on attempt {attempt}: {str(e)}")

        raise SchemaValidationError("Claude returned invalid JSON after retry")
