"""Client for the coding agent's HTTP API."""

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class AgentAPIError(Exception):
    """A call to the agent API failed or returned a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AgentClient:
    """Async wrapper around the agent's sessions, permissions and questions endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise AgentAPIError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            raise AgentAPIError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def list_sessions(self) -> list[dict]:
        result = await self._request("GET", "/session")
        return result if isinstance(result, list) else []

    async def create_session(self, title: str | None = None) -> dict:
        body = {"title": title} if title else {}
        result = await self._request("POST", "/session", json=body)
        if not isinstance(result, dict) or not result.get("id"):
            raise AgentAPIError("session creation returned no id")
        return result

    async def prompt_async(self, session_id: str, text: str, agent: str | None = None) -> None:
        """Submit a prompt without waiting for the agent to finish."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if agent:
            body["agent"] = agent
        await self._request("POST", f"/session/{session_id}/prompt_async", json=body)
        logger.info(f"Prompt dispatched to session {session_id[:12]} (agent {agent or 'default'})")

    async def reply_permission(self, session_id: str, permission_id: str, response: str) -> None:
        """Resolve a permission with ``once``, ``always`` or ``reject``."""
        await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json={"response": response},
        )

    async def list_questions(self, directory: str | None = None) -> list[dict]:
        params = {"directory": directory} if directory else None
        result = await self._request("GET", "/question", params=params)
        return result if isinstance(result, list) else []

    async def reply_question(self, request_id: str, answers: list[str]) -> None:
        await self._request("POST", f"/question/{request_id}/reply", json={"answers": [answers]})

    async def reject_question(self, request_id: str) -> None:
        await self._request("POST", f"/question/{request_id}/reject")

    async def find_question_request(
        self,
        call_id: str,
        session_id: str = "",
        *,
        directory: str | None = None,
        attempts: int = 3,
        delay: float = 0.5,
    ) -> str | None:
        """Id of the open question-request raised by tool call ``call_id``.

        The agent may register the request shortly after the tool call
        starts, so the lookup is retried ``attempts`` times.
        """
        for attempt in range(max(1, attempts)):
            for item in await self.list_questions(directory):
                tool = item.get("tool") or {}
                if call_id and (tool.get("callID") == call_id or item.get("callID") == call_id):
                    return item.get("id")
                if not call_id and session_id and item.get("sessionID") == session_id:
                    return item.get("id")
            if attempt + 1 < attempts:
                await asyncio.sleep(delay)
        return None

    async def last_assistant_text(self, session_id: str, limit: int = 1) -> str:
        """Text parts of the most recent assistant message in a session."""
        messages = await self._request("GET", f"/session/{session_id}/message", params={"limit": limit})
        if not isinstance(messages, list):
            return ""
        for message in reversed(messages):
            if (message.get("info") or {}).get("role") == "assistant":
                parts = message.get("parts") or []
                return "\n".join(p.get("text", "") for p in parts if p.get("type") == "text")
        return ""
