"""Notion API stub built on ``httpx.MockTransport``.

Records every page creation request and answers with sequential page ids.
``fail_when(body)`` returning True makes that request fail with a Notion
validation error.
"""
import json
from typing import Any, Callable, Dict, List, Optional

import httpx

BASE_URL = "https://api.notion.test/v1"


class NotionStub:
    def __init__(self, fail_when: Optional[Callable[[Dict[str, Any]], bool]] = None):
        self.fail_when = fail_when
        self.requests: List[Dict[str, Any]] = []
        self.pages: List[Dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)

        if self.fail_when and self.fail_when(body):
            return httpx.Response(400, json={
                "object": "error",
                "status": 400,
                "code": "validation_error",
                "message": "body failed validation: Amount is not a number",
            })

        n = len(self.pages) + 1
        page = {"object": "page", "id": f"{n:08x}-aaaa-4bbb-8ccc-{n:012x}", **body}
        self.pages.append(page)
        return httpx.Response(200, json=page)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(self.handler))

    def pages_in(self, database_id: str) -> List[Dict[str, Any]]:
        return [p for p in self.pages if p["parent"]["database_id"] == database_id]


def title_of(body: Dict[str, Any], prop: str = "Description") -> str:
    return body["properties"][prop]["title"][0]["text"]["content"]
