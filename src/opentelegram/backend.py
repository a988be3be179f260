import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional
from urllib.error import HTTPError
from urllib.parse import quote
from urllib.request import Request, urlopen


class BackendError(RuntimeError):
    """In-band error reported by the OpenCode server."""

    def __init__(self, payload: object) -> None:
        self.payload = payload
        super().__init__(f"OpenCode API error: {json.dumps(payload, default=str)}")


@dataclass(frozen=True)
class ModelSelector:
    provider_id: str
    model_id: str

    @classmethod
    def parse(cls, value: str) -> "ModelSelector":
        provider_id, _, model_id = value.strip().partition("/")
        return cls(provider_id=provider_id, model_id=model_id)

    def to_payload(self) -> Dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


class OpenCodeClient:
    def __init__(self, base_url: str, timeout_seconds: int = 600) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _request(
        self,
        path: str,
        method: str = "GET",
        payload: Optional[Dict[str, object]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> object:
        body = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"

        endpoint = f"{self.base_url}{path}"
        req = Request(endpoint, data=body, method=method, headers=headers)
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            with urlopen(req, timeout=timeout) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            try:
                error_payload: object = json.loads(raw_error)
            except json.JSONDecodeError:
                error_payload = {"status": exc.code, "body": raw_error[-500:]}
            raise BackendError(error_payload) from exc
        if not raw.strip():
            return None
        return json.loads(raw)

    def create_session(self) -> str:
        data = self._request("/session", method="POST", payload={})
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            raise BackendError({"message": "session create returned no id"})
        return data["id"]

    def list_sessions(self) -> List[Dict[str, object]]:
        data = self._request("/session")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def list_providers(self) -> List[Dict[str, object]]:
        data = self._request("/config/providers")
        if not isinstance(data, dict):
            return []
        providers = data.get("providers")
        if not isinstance(providers, list):
            return []
        return [item for item in providers if isinstance(item, dict)]

    def prompt(
        self,
        session_id: str,
        parts: List[Dict[str, object]],
        model: ModelSelector,
    ) -> object:
        data = self._request(
            f"/session/{quote(session_id, safe='')}/message",
            method="POST",
            payload={"parts": parts, "model": model.to_payload()},
        )
        return data

    def list_messages(self, session_id: str) -> List[Dict[str, object]]:
        data = self._request(f"/session/{quote(session_id, safe='')}/message")
        if isinstance(data, dict):
            data = data.get("messages")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def is_reachable(self) -> bool:
        try:
            self._request("/session", timeout_seconds=5)
        except Exception:
            logging.debug("OpenCode health probe failed", exc_info=True)
            return False
        return True

    def iter_events(self) -> Iterator[Dict[str, object]]:
        """Yield decoded events from the server-sent event stream."""
        req = Request(f"{self.base_url}/event", headers={"Accept": "text/event-stream"})
        with urlopen(req, timeout=self.timeout_seconds) as response:
            data_lines: List[str] = []
            for raw_line in response:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line or not data_lines:
                    continue
                event = parse_event_data("\n".join(data_lines))
                data_lines = []
                if event is not None:
                    yield event


def parse_event_data(raw: str) -> Optional[Dict[str, object]]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        return None
    return payload
