"""
Agent Client - Controller-side HTTP client for one agent.

Wraps the agent endpoint (GET /status, GET /pc-info, POST /start, ...) with
bounded timeouts and a small exception hierarchy, so callers never see raw
requests errors.

Usage:
    from shepherd.client import AgentClient, AgentUnavailable

    client = AgentClient("10.0.0.5:3001", timeout=5)
    try:
        status = client.get_status()
    except AgentUnavailable:
        # Agent is down - the registry marks it Offline
        pass

Retry policy:
    - GETs retry on connection errors/timeouts (max_retries attempts total)
    - POSTs are sent once: commands are not safe to replay
    - HTTP 4xx/5xx are never retried; the agent already answered
"""

import json
import logging
import time
from typing import Any, Dict, Iterator, List, Mapping, Optional

import requests

from shepherd.types import IdentitySnapshot, StatusSnapshot

logger = logging.getLogger("shepherd.client")

DEFAULT_TIMEOUT = 5.0


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AgentError(Exception):
    """Base error for any agent communication problem."""
    pass


class AgentUnavailable(AgentError):
    """Agent not reachable - connection error or timeout."""

    def __init__(self, address: str, url: str, cause: Optional[Exception] = None):
        self.address = address
        self.url = url
        self.cause = cause
        # A read timeout means the request reached the agent before it went quiet
        self.sent = isinstance(cause, requests.ReadTimeout) or "Connection aborted" in str(cause or "")
        message = f"Agent at {address} is unavailable ({url})"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class AgentHttpError(AgentError):
    """HTTP 4xx/5xx from the agent. `payload` is the decoded body when it was JSON."""

    def __init__(self, status: int, body: Optional[str] = None, url: Optional[str] = None):
        self.status = status
        self.body = body
        self.url = url
        self.payload: Optional[Dict[str, Any]] = None
        try:
            decoded = json.loads(body) if body else None
            if isinstance(decoded, dict):
                self.payload = decoded
        except ValueError:
            pass
        truncated = self.error or (body[:200] if body else "")
        super().__init__(f"HTTP {status}: {truncated}")

    @property
    def error(self) -> Optional[str]:
        """Human-readable error reported by the agent."""
        return self.payload.get("error") if self.payload else None

    @property
    def error_kind(self) -> Optional[str]:
        return self.payload.get("errorKind") if self.payload else None


class AgentDecodeError(AgentError):
    """Response wasn't valid JSON or missing expected fields."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


# =============================================================================
# CLIENT
# =============================================================================

class AgentClient:
    """
    HTTP client for one agent at `address` ("host:port").

    Args:
        address: Agent address, "host:port"
        timeout: Default per-request timeout in seconds
        max_retries: Attempts for GET requests
        backoff_factor: Exponential backoff between GET retries
    """

    def __init__(
        self,
        address: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 1,
        backoff_factor: float = 0.5,
    ):
        self.address = address
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    def _full_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    def close(self):
        self._session.close()

    # =========================================================================
    # CORE REQUEST LOGIC
    # =========================================================================

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the agent and return its JSON envelope.

        Raises:
            AgentUnavailable: Connection failed or timeout
            AgentHttpError: HTTP 4xx/5xx
            AgentDecodeError: Invalid JSON, or no `success` field
        """
        url = self._full_url(path)
        timeout = timeout or self.timeout
        attempts = self.max_retries if method == "GET" else 1

        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                resp = self._session.request(
                    method, url, params=params, json=json_body, timeout=timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_exception = e
                self._log_retry(attempt, attempts, url, str(e))
                continue

            if resp.status_code >= 400:
                raise AgentHttpError(resp.status_code, resp.text, url)

            try:
                data = resp.json()
            except ValueError as e:
                raise AgentDecodeError(f"Invalid JSON from {url}: {e}", url)
            if not isinstance(data, dict) or "success" not in data:
                raise AgentDecodeError(f"Unexpected response shape from {url}", url)
            return data

        logger.debug(f"Agent {self.address} unavailable after {attempts} attempt(s): {url}")
        raise AgentUnavailable(self.address, url, last_exception)

    def _log_retry(self, attempt: int, attempts: int, url: str, reason: str):
        if attempt < attempts - 1:
            sleep_time = self.backoff_factor * (2 ** attempt)
            logger.debug(
                f"[{self.address}] Attempt {attempt + 1}/{attempts} failed ({reason}), "
                f"retrying in {sleep_time:.1f}s..."
            )
            time.sleep(sleep_time)

    def _data(self, envelope: Dict[str, Any], url_path: str) -> Any:
        if "data" not in envelope:
            raise AgentDecodeError(f"No data in response from {self._full_url(url_path)}")
        return envelope["data"]

    # =========================================================================
    # PROBES
    # =========================================================================

    def get_status(self, timeout: Optional[float] = None) -> StatusSnapshot:
        data = self._data(self.request("GET", "/status", timeout=timeout), "/status")
        if not isinstance(data, dict):
            raise AgentDecodeError(f"Status from {self.address} is not an object")
        return StatusSnapshot.from_dict(data)

    def get_identity(self, timeout: Optional[float] = None) -> IdentitySnapshot:
        data = self._data(self.request("GET", "/pc-info", timeout=timeout), "/pc-info")
        if not isinstance(data, dict) or not data.get("pcName"):
            raise AgentDecodeError(f"Identity from {self.address} has no pcName")
        return IdentitySnapshot.from_dict(data)

    def health_check(self, timeout: float = 2.0) -> bool:
        """Quick liveness check. Never raises."""
        try:
            resp = self._session.get(self._full_url("/health"), timeout=timeout)
            return resp.status_code == 200
        except Exception:
            return False

    def list_adapters(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        return self._data(self.request("GET", "/network", timeout=timeout), "/network")

    def is_running(self, name: str, timeout: Optional[float] = None) -> bool:
        data = self._data(
            self.request("GET", "/processes", params={"name": name}, timeout=timeout), "/processes"
        )
        return bool(data.get("running"))

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def start_program(self, path: str, timeout: Optional[float] = None) -> str:
        return self.request("POST", "/start", json_body={"path": path}, timeout=timeout).get("data", "")

    def stop_program(self, name: str, timeout: Optional[float] = None) -> str:
        return self.request("POST", "/stop", json_body={"name": name}, timeout=timeout).get("data", "")

    def restart(self, timeout: Optional[float] = None) -> str:
        return self.request("POST", "/restart", json_body={}, timeout=timeout).get("message", "")

    def disconnect(self, timeout: Optional[float] = None) -> str:
        return self.request("POST", "/disconnect", json_body={}, timeout=timeout).get("data", "")

    def reconnect(self, timeout: Optional[float] = None) -> str:
        return self.request("POST", "/reconnect", json_body={}, timeout=timeout).get("data", "")

    def find_program(self, program_name: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        envelope = self.request(
            "POST", "/find-program", json_body={"programName": program_name}, timeout=timeout
        )
        return self._data(envelope, "/find-program")

    # =========================================================================
    # PUSH CHANNEL
    # =========================================================================

    def stream_events(self, connect_timeout: Optional[float] = None) -> Iterator[Dict[str, Any]]:
        """
        Yield decoded events from the agent's push channel until it closes.

        The first event is the status/identity snapshot sent on connect.
        """
        url = self._full_url("/events")
        try:
            resp = self._session.get(
                url,
                stream=True,
                timeout=(connect_timeout or self.timeout, None),
                headers={"Accept": "text/event-stream"},
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise AgentUnavailable(self.address, url, e)

        if resp.status_code >= 400:
            raise AgentHttpError(resp.status_code, resp.text, url)

        with resp:
            try:
                yield from parse_sse_lines(resp.iter_lines(chunk_size=1, decode_unicode=True))
            except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
                raise AgentUnavailable(self.address, url, e)


def parse_sse_lines(lines) -> Iterator[Dict[str, Any]]:
    """Decode Server-Sent Events from an iterator of text lines."""
    event_type = None
    data_lines: List[str] = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            if data_lines:
                try:
                    event = json.loads("\n".join(data_lines))
                except ValueError:
                    event = {"type": event_type or "message", "message": "\n".join(data_lines)}
                if isinstance(event, dict):
                    event.setdefault("type", event_type or "message")
                    yield event
            event_type = None
            data_lines = []
        elif line.startswith(":"):
            continue   # keepalive
        elif line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip())
