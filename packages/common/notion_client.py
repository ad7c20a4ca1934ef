"""
Notion API client - the external record store for transactions and entities

Thin async wrapper over the Notion REST API using httpx. Only the calls the
import pipeline needs are implemented (page creation). Rate-limited responses
are retried with the shared backoff helper.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from packages.common.config import Settings, get_settings
from packages.common.retry import with_rate_limit_retry

logger = structlog.get_logger()


class NotionAPIError(Exception):
    """Non-2xx response from the Notion API"""

    def __init__(
        self,
        message: str,
        code: str,
        status: Optional[int] = None,
        setting: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        # env setting naming the target database, when known
        self.setting = setting


def notion_page_url(page_id: str) -> str:
    """Browser URL for a Notion page id"""
    return f"https://www.notion.so/{page_id.replace('-', '')}"


def rich_text(content: str) -> Dict[str, Any]:
    return {"rich_text": [{"text": {"content": content}}]}


class NotionClient:
    """
    Async Notion client.

    Usage:
        client = NotionClient()
        page = await client.create_page(database_id, {"Name": {"title": [...]}})
        await client.aclose()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = http_client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.settings.notion_api_token:
                raise NotionAPIError(
                    "NOTION_API_TOKEN not configured", code="unauthorized", status=401
                )
            self._client = httpx.AsyncClient(
                base_url=self.settings.notion_api_url,
                timeout=self.settings.notion_timeout,
                headers={
                    "Authorization": f"Bearer {self.settings.notion_api_token}",
                    "Notion-Version": self.settings.notion_version,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._http().request(method, path, json=json)

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise NotionAPIError(
                body.get("message") or f"Notion API returned HTTP {response.status_code}",
                code=body.get("code") or "unknown_error",
                status=response.status_code,
            )

        return response.json()

    async def create_page(self, database_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a page (row) in a Notion database.

        Args:
            database_id: Parent database id
            properties: Notion property payload

        Returns:
            Created page object (includes "id")
        """
        payload = {"parent": {"database_id": database_id}, "properties": properties}

        page = await with_rate_limit_retry(
            lambda: self._request("POST", "/pages", payload),
            context="notion_create_page",
            max_retries=self.settings.ai_max_retries,
            base_delay=self.settings.ai_retry_base_delay,
            max_jitter=self.settings.ai_retry_max_jitter,
        )

        logger.debug("notion_page_created", database_id=database_id, page_id=page.get("id"))
        return page
