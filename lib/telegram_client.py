import logging
from typing import Union

import aiohttp

from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org'


class TelegramClient:
    def __init__(self, settings: Settings, base_url: str = TELEGRAM_API_URL):
        token = settings.require('telegram_bot_token')
        self.chat_id = settings.require('telegram_chat_id')
        self.base_url = f"{base_url}/bot{token}"

    async def send_message(self, text: str) -> None:
        """Send a text message to the configured chat"""
        logger.info(f"Sending Telegram message: {text[:20]}...")
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.base_url}/sendMessage",
                json={'chat_id': self.chat_id, 'text': text}
            ) as response:
                if response.status >= 400:
                    raise UpstreamError(f"Telegram sendMessage failed: {await response.text()}")
        logger.info("Telegram message sent")

    async def send_document(self, content: Union[str, bytes], filename: str) -> None:
        """Upload content as a plain-text document to the configured chat"""
        if isinstance(content, str):
            content = content.encode('utf-8')

        data = aiohttp.FormData()
        data.add_field('chat_id', self.chat_id)
        data.add_field('document',
                       content,
                       filename=filename,
                       content_type='text/plain')

        logger.info(f"Sending Telegram document {filename} ({len(content)} bytes)")
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.base_url}/sendDocument", data=data) as response:
                if response.status >= 400:
                    raise UpstreamError(f"Telegram sendDocument failed: {await response.text()}")
        logger.info("Telegram document sent")
