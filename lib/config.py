from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from lib.error_handler import MissingConfiguration


class Settings(BaseSettings):
    # OpenAI settings
    openai_api_key: str = ''
    whisper_model: str = 'whisper-1'

    # Anthropic settings
    anthropic_api_key: str = ''
    anthropic_model: str = 'claude-3-5-sonnet-latest'
    anthropic_max_tokens: int = 1024
    local_timezone: str = 'Asia/Baku'

    # Todoist settings
    todoist_token: str = ''

    # Telegram settings
    telegram_bot_token: str = ''
    telegram_chat_id: str = ''

    # Upload limits
    max_audio_bytes: int = 25 * 1024 * 1024
    upload_timeout_seconds: float = 25.0

    log_level: str = 'INFO'

    model_config = SettingsConfigDict(
        env_file='.env',
        case_sensitive=False,
        extra='ignore',
    )

    def require(self, name: str) -> str:
        """Return a credential, failing fast when it is not configured"""
        value = getattr(self, name)
        if not value:
            raise MissingConfiguration(f"Missing environment variable: {name.upper()}")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
