#!/usr/bin/env python3
"""
Shepherd Agent - Remote administration endpoint for a single machine.

The agent runs on each managed PC and:
1. Executes administrative commands (start/stop programs, reboot, network toggle)
2. Reports system status and a stable machine identity
3. Pushes log/error/status events to every connected listener (SSE)

Usage:
    # Run with defaults (0.0.0.0:3001, or $PORT via config/agent.yaml)
    python3 -m shepherd.agent

    # Explicit port and config
    python3 -m shepherd.agent --port 3001 --config ~/.shepherd/agent.yaml

    # One-shot queries, no server
    python3 -m shepherd.agent --status
    python3 -m shepherd.agent --find winword

API Endpoints:
    GET  /health              - Basic liveness, no system probing
    GET  /status              - Status snapshot
    GET  /pc-info             - Identity snapshot
    GET  /network             - Network adapters
    GET  /processes?name=X    - Is a program running
    GET  /events              - Push channel (Server-Sent Events)
    POST /start               - Launch a program (body: {"path": str})
    POST /stop                - Force-stop a program (body: {"name": str})
    POST /restart             - Reboot after the response is sent
    POST /disconnect          - Disable the default-route adapter
    POST /reconnect           - Enable disabled adapters
    POST /find-program        - Resolve a program path (body: {"programName": str})

Every request is handled on its own thread. Commands are not serialized
against each other; two concurrent commands on the same program are
ordered by the OS only.
"""

import json
import logging
import queue
import signal
import threading
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from shepherd.config import AgentConfig, load_agent_config
from shepherd.events import KEEPALIVE, EVENT_STATUS, EventBroadcaster, format_sse, make_event
from shepherd.executor import CommandExecutor
from shepherd.identity import IdentityProvider
from shepherd.locator import ProgramLocator
from shepherd.types import CommandOutcome, ErrorKind

logger = logging.getLogger("shepherd.agent")

Response = Tuple[int, Dict[str, Any]]


class ValidationError(Exception):
    """Malformed request - rejected before any OS action."""
    pass


def _require(body: Dict[str, Any], field: str) -> str:
    value = body.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def _schedule(delay: float, fn: Callable[[], None]):
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


class AgentService:
    """
    Route logic for the agent endpoint, independent of the HTTP transport.

    Every route returns (http_status, json_payload). Each command maps to
    exactly one executor call and is announced on the push channel before
    and after it runs.
    """

    def __init__(
        self,
        executor: Optional[CommandExecutor] = None,
        locator: Optional[ProgramLocator] = None,
        identity: Optional[IdentityProvider] = None,
        events: Optional[EventBroadcaster] = None,
        restart_delay_s: float = 1.0,
        scheduler: Callable[[float, Callable[[], None]], None] = _schedule,
    ):
        self.executor = executor or CommandExecutor()
        self.locator = locator or ProgramLocator()
        self.identity = identity or IdentityProvider()
        self.events = events or EventBroadcaster()
        self.restart_delay_s = restart_delay_s
        self._scheduler = scheduler
        self.closing = threading.Event()

        self._get_routes: Dict[str, Callable[[Dict[str, str]], Response]] = {
            "/health": self.health,
            "/status": self.status,
            "/pc-info": self.pc_info,
            "/network": self.network,
            "/processes": self.processes,
        }
        self._post_routes: Dict[str, Callable[[Dict[str, Any]], Response]] = {
            "/start": self.start,
            "/stop": self.stop,
            "/restart": self.restart,
            "/disconnect": self.disconnect,
            "/reconnect": self.reconnect,
            "/find-program": self.find_program,
        }

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    @staticmethod
    def parse_body(raw: bytes) -> Dict[str, Any]:
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be valid JSON")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    def handle(self, method: str, path: str, query: Optional[Dict[str, str]] = None,
               body: bytes = b"") -> Response:
        routes = self._get_routes if method == "GET" else self._post_routes
        route = routes.get(path) if method in ("GET", "POST") else None
        if route is None:
            return 404, {"success": False, "error": f"Not found: {method} {path}"}

        try:
            if method == "POST":
                return route(self.parse_body(body))
            return route(query or {})
        except ValidationError as e:
            logger.warning(f"Rejected {method} {path}: {e}")
            return 400, {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"{method} {path} failed: {e}", exc_info=True)
            self.events.error(f"{path} failed: {e}")
            return 500, {"success": False, "error": str(e), "errorKind": ErrorKind.UNKNOWN.value}

    def _respond(self, outcome: CommandOutcome) -> Response:
        if outcome.success:
            self.events.log(outcome.message)
            return 200, {"success": True, "data": outcome.message}
        logger.warning(f"Command failed ({outcome.error_kind.value}): {outcome.message}")
        self.events.error(outcome.message)
        return 500, {"success": False, "error": outcome.message, "errorKind": outcome.error_kind.value}

    def snapshot_event(self) -> Dict[str, Any]:
        """Status + identity, sent to each listener as it connects."""
        return make_event(
            EVENT_STATUS,
            data=self.executor.query_status().to_dict(),
            identity=self.identity.snapshot().to_dict(),
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def health(self, query: Dict[str, str]) -> Response:
        return 200, {"success": True, "status": "ok", "timestamp": datetime.now().isoformat()}

    def status(self, query: Dict[str, str]) -> Response:
        return 200, {"success": True, "data": self.executor.query_status().to_dict()}

    def pc_info(self, query: Dict[str, str]) -> Response:
        return 200, {"success": True, "data": self.identity.snapshot().to_dict()}

    def network(self, query: Dict[str, str]) -> Response:
        adapters = self.executor.list_adapters()
        return 200, {"success": True, "data": [a.to_dict() for a in adapters]}

    def processes(self, query: Dict[str, str]) -> Response:
        name = _require(query, "name")
        running = self.executor.is_program_running(name)
        return 200, {"success": True, "data": {"name": name, "running": running}}

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def start(self, body: Dict[str, Any]) -> Response:
        target = _require(body, "path")
        descriptor = self.locator.describe(target)
        self.events.log(f"Starting program: {descriptor.launch_target}")
        return self._respond(self.executor.start_program(descriptor))

    def stop(self, body: Dict[str, Any]) -> Response:
        name = _require(body, "name")
        self.events.log(f"Stopping program: {name}")
        return self._respond(self.executor.stop_program(name))

    def restart(self, body: Dict[str, Any]) -> Response:
        self.events.log("Restarting PC...")
        self._scheduler(self.restart_delay_s, self._restart_now)
        return 200, {"success": True, "message": "Restart initiated"}

    def _restart_now(self):
        outcome = self.executor.restart_host()
        if outcome.success:
            self.events.log(outcome.message)
        else:
            logger.error(f"Restart failed: {outcome.message}")
            self.events.error(outcome.message)

    def disconnect(self, body: Dict[str, Any]) -> Response:
        self.events.log("Disconnecting from internet...")
        return self._respond(self.executor.set_network_connectivity(False))

    def reconnect(self, body: Dict[str, Any]) -> Response:
        self.events.log("Reconnecting to internet...")
        return self._respond(self.executor.set_network_connectivity(True))

    def find_program(self, body: Dict[str, Any]) -> Response:
        name = _require(body, "programName")
        path = self.locator.find(name)
        if path:
            self.events.log(f"Found {name} at {path}")
        else:
            self.events.log(f"{name} not found in known locations")
        return 200, {"success": True, "data": {"programName": name, "path": path, "found": path is not None}}


class AgentRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the agent API."""

    service: AgentService
    keepalive_s: float = 15

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def _send_json(self, data: Any, status: int = 200):
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def _route(self, method: str, body: bytes = b""):
        parsed = urlparse(self.path)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        status, payload = self.service.handle(method, parsed.path, query, body)
        self._send_json(payload, status)

    def do_GET(self):
        if urlparse(self.path).path == "/events":
            self._handle_events()
        else:
            self._route("GET")

    def _read_body(self) -> bytes:
        raw = self.headers.get("Content-Length") or "0"
        try:
            content_length = int(raw)
        except ValueError:
            raise ValidationError(f"Invalid Content-Length: {raw}")
        if content_length < 0:
            raise ValidationError(f"Invalid Content-Length: {raw}")
        return self.rfile.read(content_length) if content_length else b""

    def do_POST(self):
        try:
            body = self._read_body()
        except ValidationError as e:
            logger.warning(f"Rejected POST {self.path}: {e}")
            self.close_connection = True
            self._send_json({"success": False, "error": str(e)}, 400)
            return
        self._route("POST", body)

    def do_OPTIONS(self):
        """Handle CORS preflight."""
        self.send_response(200)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()

    def _handle_events(self):
        """Stream push-channel events until the listener goes away."""
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "keep-alive")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()

        client_id, message_queue = self.service.events.subscribe()
        try:
            self.wfile.write(format_sse(self.service.snapshot_event()).encode())
            self.wfile.flush()
            while not self.service.closing.is_set():
                try:
                    message = message_queue.get(timeout=self.keepalive_s)
                except queue.Empty:
                    message = KEEPALIVE
                self.wfile.write(message.encode())
                self.wfile.flush()
        except (BrokenPipeError, ConnectionResetError):
            pass
        except Exception as e:
            logger.error(f"Event stream error: {e}")
        finally:
            self.service.events.unsubscribe(client_id)


class AgentServer:
    """Owns the HTTP server and its handler wiring."""

    def __init__(self, config: Optional[AgentConfig] = None, service: Optional[AgentService] = None):
        self.config = config or AgentConfig()
        self.service = service or AgentService(
            executor=CommandExecutor(timeout=self.config.command_timeout_s),
            identity=IdentityProvider(hostname=self.config.hostname),
            events=EventBroadcaster(queue_size=self.config.listener_queue_size),
            restart_delay_s=self.config.restart_delay_s,
        )

        class Handler(AgentRequestHandler):
            pass
        Handler.service = self.service
        Handler.keepalive_s = self.config.keepalive_s

        self.server = ThreadingHTTPServer((self.config.host, self.config.port), Handler)
        self.server.daemon_threads = True
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.server.server_address[1]

    def serve_forever(self):
        self.server.serve_forever()

    def start_background(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.serve_forever, name="shepherd-agent", daemon=True)
        self._thread.start()
        return self._thread

    def shutdown(self):
        self.service.closing.set()
        self.server.shutdown()
        self.server.server_close()


def run_agent(config: AgentConfig):
    """Run the agent HTTP server until SIGTERM or Ctrl-C."""
    agent = AgentServer(config)
    identity = agent.service.identity.snapshot()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        # shutdown() blocks until serve_forever returns, so not on this thread
        threading.Thread(target=agent.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(f"Shepherd Agent starting on {config.host}:{agent.port}")
    logger.info(f"  Machine: {identity.pc_name} ({identity.agent_id})")

    try:
        agent.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down agent")
        agent.shutdown()


if __name__ == "__main__":
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Shepherd Agent")
    parser.add_argument("--config", type=str, help="Path to agent config file")
    parser.add_argument("--host", type=str, help="Address to bind to")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument("--hostname", type=str, help="Override the reported machine name")
    parser.add_argument("--status", action="store_true", help="Show status and identity, then exit")
    parser.add_argument("--find", type=str, metavar="PROGRAM", help="Resolve a program path and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_agent_config(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.hostname:
        config.hostname = args.hostname

    if args.status:
        status = CommandExecutor(timeout=config.command_timeout_s).query_status()
        identity = IdentityProvider(hostname=config.hostname).snapshot()
        print(json.dumps({"status": status.to_dict(), "identity": identity.to_dict()}, indent=2))
    elif args.find:
        path = ProgramLocator().find(args.find)
        print(json.dumps({"programName": args.find, "path": path, "found": path is not None}, indent=2))
    else:
        run_agent(config)
