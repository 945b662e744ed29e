import logging
from typing import Dict, List, Optional

import aiohttp

from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)

TODOIST_API_URL = 'https://api.todoist.com/rest/v2'
MAX_TASKS = 100


class TodoistClient:
    def __init__(self, settings: Settings, base_url: str = TODOIST_API_URL):
        self.token = settings.require('todoist_token')
        self.base_url = base_url

    def _headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.token}"}

    async def create_task(self, content: str, due_datetime: Optional[str] = None) -> str:
        """Create a task and return its id"""
        payload = {'content': content}
        if due_datetime:
            payload['due_datetime'] = due_datetime

        logger.info(f"Creating Todoist task: {content[:50]}")
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.base_url}/tasks", json=payload, headers=self._headers()) as response:
                if response.status >= 400:
                    raise UpstreamError(f"Todoist create task failed: {await response.text()}")
                task = await response.json()

        logger.info(f"Todoist task created: {task.get('id')}")
        return task.get('id')

    async def get_open_tasks(self, limit: int = MAX_TASKS) -> List[Dict[str, str]]:
        """Return open tasks as {id, content} pairs, in the order Todoist lists them"""
        limit = max(1, min(limit, MAX_TASKS))
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"{self.base_url}/tasks",
                params={'limit': str(limit)},
                headers=self._headers()
            ) as response:
                if response.status >= 400:
                    raise UpstreamError(f"Todoist fetch tasks failed: {await response.text()}")
                tasks = await response.json()

        logger.info(f"Fetched {len(tasks)} open Todoist tasks")
        return [
            {'id': str(task['id']), 'content': task.get('content', '')}
            for task in tasks[:limit]
        ]

    async def close_task(self, task_id: str) -> None:
        logger.info(f"Closing Todoist task {task_id}")
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.base_url}/tasks/{task_id}/close", headers=self._headers()) as response:
                if response.status >= 400:
                    raise UpstreamError(f"Todoist close task failed: {await response.text()}")
