"""HTTP client for the coding agent server running inside each container."""

import httpx


class AgentClientError(Exception):
    """Raised when a request to a coding agent fails."""


class AgentClient:
    """Thin async wrapper over the agent's session API.

    Sessions live at ``/session``; each has a message log at
    ``/session/{id}/message``. Posting to that log sends a prompt and
    returns the assistant's reply once it finishes.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def for_agent(cls, name: str, port: int, **kwargs) -> "AgentClient":
        return cls(f"http://{name}:{port}", **kwargs)

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs):
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AgentClientError(
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise AgentClientError(f"{method} {path} failed: {e}") from e
        if not response.content:
            return None
        return response.json()

    async def list_sessions(self) -> list[dict]:
        return await self._request("GET", "/session") or []

    async def create_session(self, title: str) -> dict:
        session = await self._request("POST", "/session", json={"title": title})
        if not session or "id" not in session:
            raise AgentClientError("Session creation returned no id")
        return session

    async def list_messages(self, session_id: str) -> list[dict]:
        return await self._request("GET", f"/session/{session_id}/message") or []

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        model: str | None = None,
        timeout: float | None = None,
    ) -> dict:
        body: dict = {"parts": [{"type": "text", "text": text}]}
        if model:
            provider, _, model_id = model.partition("/")
            body["model"] = {"providerID": provider, "modelID": model_id}
        kwargs: dict = {"json": body}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return await self._request("POST", f"/session/{session_id}/message", **kwargs) or {}

    async def is_ready(self) -> bool:
        try:
            await self.list_sessions()
        except AgentClientError:
            return False
        return True


def message_text(message: dict | None) -> str | None:
    """First text part of a session message."""
    if not message:
        return None
    for part in message.get("parts") or []:
        if part.get("type") == "text" and part.get("text"):
            return part["text"]
    return None


def message_id(message: dict | None) -> str | None:
    if not message:
        return None
    info = message.get("info") or {}
    return info.get("id") or message.get("id")
