"""
Notion Client

Task sink for approved feedback: creates, updates and assigns pages in a
Notion database through the public REST API.

Expected database properties:
    Name (title), Description (rich_text), Priority (select), Area (select),
    Due Date (date), Slack Message Link (url), Multi-select (multi_select),
    Person (people)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .schemas import Category, Priority, TaskPayload

logger = logging.getLogger("feedbot.common.notion_client")

NOTION_API_URL = "https://api.notion.com/v1"

# Notion rejects rich_text segments longer than this
MAX_TEXT_LENGTH = 2000


class NotionAPIError(RuntimeError):
    """Raised when the Notion API is unreachable or returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def page_url(page_id: str) -> str:
    """Browser URL for a page id."""
    return f"https://notion.so/{page_id.replace('-', '')}"


def _text(content: str) -> List[Dict[str, Any]]:
    return [{"text": {"content": content[:MAX_TEXT_LENGTH]}}]


class NotionClient:
    """Creates and maintains backlog tasks in one Notion database."""

    def __init__(
        self,
        api_key: str,
        database_id: str,
        api_version: str = "2022-06-28",
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self._database_id = database_id
        self._client = http_client or httpx.Client(base_url=NOTION_API_URL, timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Notion-Version": api_version,
            "Content-Type": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, json: Optional[dict] = None, params: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, headers=self._headers, json=json, params=params)
        except httpx.HTTPError as e:
            raise NotionAPIError(f"Notion request {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise NotionAPIError(
                f"Notion {method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response.json()

    # ===================
    # READ OPERATIONS
    # ===================

    def describe_schema(self) -> Dict[str, Dict[str, Any]]:
        """Property name -> {"type", optional "options"} for the database.

        Used as the startup connectivity check, so failures raise.
        """
        database = self._request("GET", f"/databases/{self._database_id}")

        schema = {}
        for name, prop in database.get("properties", {}).items():
            entry = {"type": prop.get("type")}
            if prop.get("type") in ("select", "multi_select"):
                options = prop.get(prop["type"], {}).get("options", [])
                entry["options"] = [o.get("name") for o in options]
            schema[name] = entry
        return schema

    def query_tasks_by_area(self, area: str) -> List[Dict[str, Any]]:
        """Pages whose Area select equals `area`."""
        body = {"filter": {"property": "Area", "select": {"equals": area}}}
        return self._request("POST", f"/databases/{self._database_id}/query", json=body).get("results", [])

    def list_users(self) -> List[Dict[str, Any]]:
        users: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            data = self._request("GET", "/users", params=params)
            users.extend(data.get("results", []))
            if not data.get("has_more"):
                return users
            cursor = data.get("next_cursor")

    def find_user(self, name_query: str) -> Optional[Dict[str, Any]]:
        """Case-insensitive substring match on display name.

        Intentionally approximate: an exact (case-insensitive) name wins,
        otherwise the first person whose name contains the query.
        """
        query = name_query.strip().lower()
        if not query:
            return None

        people = [u for u in self.list_users() if u.get("type", "person") == "person"]
        for user in people:
            if (user.get("name") or "").lower() == query:
                return user
        for user in people:
            if query in (user.get("name") or "").lower():
                return user
        return None

    # ===================
    # WRITE OPERATIONS
    # ===================

    def _properties(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        if fields.get("title"):
            properties["Name"] = {"title": _text(fields["title"])}
        if fields.get("description"):
            properties["Description"] = {"rich_text": _text(fields["description"])}
        if fields.get("priority"):
            priority = fields["priority"]
            label = priority.label if isinstance(priority, Priority) else str(priority)
            properties["Priority"] = {"select": {"name": label}}
        if fields.get("category"):
            category = fields["category"]
            label = category.label if isinstance(category, Category) else str(category).capitalize()
            properties["Area"] = {"select": {"name": label}}
        if fields.get("due_date"):
            properties["Due Date"] = {"date": {"start": fields["due_date"]}}
        if fields.get("message_link"):
            properties["Slack Message Link"] = {"url": fields["message_link"]}
        return properties

    def create_task(self, payload: TaskPayload) -> Dict[str, Any]:
        """Create a backlog page. Returns the page object (``id``, ``url``).

        Raises:
            NotionAPIError: on any API failure
        """
        properties = self._properties(payload.model_dump())
        properties["Multi-select"] = {"multi_select": [{"name": "To-do"}]}

        page = self._request(
            "POST",
            "/pages",
            json={"parent": {"database_id": self._database_id}, "properties": properties},
        )
        page.setdefault("url", page_url(page["id"]))
        logger.info("Created Notion task %s: %s", page["id"], payload.title)
        return page

    def update_task(self, page_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        properties = self._properties(fields)
        if not properties:
            raise ValueError("No updatable fields given")
        return self._request("PATCH", f"/pages/{page_id}", json={"properties": properties})

    def assign_person(self, page_id: str, name_query: str) -> Dict[str, Any]:
        """Set the Person property to the user matching `name_query`.

        Returns the matched user.

        Raises:
            LookupError: if no workspace user matches
            NotionAPIError: on API failure
        """
        user = self.find_user(name_query)
        if not user:
            raise LookupError(f'User "{name_query}" not found in Notion workspace')

        self._request(
            "PATCH",
            f"/pages/{page_id}",
            json={"properties": {"Person": {"people": [{"id": user["id"]}]}}},
        )
        logger.info("Assigned Notion task %s to %s", page_id, user.get("name"))
        return user
