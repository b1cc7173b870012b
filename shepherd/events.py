"""
Agent push channel - broadcast events to every connected listener.

Each listener owns a bounded queue. Publishing never blocks: a listener whose
queue is full is dropped on the spot, so one slow client cannot stall the
others or the command that triggered the event.

Event shape on the wire (Server-Sent Events):
    event: log
    data: {"type": "log", "message": "Starting program: notepad"}

    event: status
    data: {"type": "status", "data": {...StatusSnapshot...}, "identity": {...}}
"""

import json
import logging
import queue
import threading
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("shepherd.events")

EVENT_LOG = "log"
EVENT_ERROR = "error"
EVENT_STATUS = "status"

KEEPALIVE = ": keepalive\n\n"


def make_event(event_type: str, message: Optional[str] = None, data: Any = None, **extra) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": event_type}
    if message is not None:
        event["message"] = message
    if data is not None:
        event["data"] = data
    event.update(extra)
    return event


def format_sse(event: Dict[str, Any]) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event, default=str)}\n\n"


class EventBroadcaster:
    """Manages push-channel listeners."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._clients: Dict[int, queue.Queue] = {}
        self._lock = threading.Lock()
        self._client_id = 0

    def subscribe(self) -> Tuple[int, queue.Queue]:
        """Add a listener, returns (client_id, message_queue)."""
        with self._lock:
            self._client_id += 1
            q = queue.Queue(maxsize=self.queue_size)
            self._clients[self._client_id] = q
            logger.info(f"Listener {self._client_id} connected (total: {len(self._clients)})")
            return self._client_id, q

    def unsubscribe(self, client_id: int):
        with self._lock:
            if client_id in self._clients:
                del self._clients[client_id]
                logger.info(f"Listener {client_id} disconnected (total: {len(self._clients)})")

    def publish(self, event: Dict[str, Any]) -> int:
        """Queue an event for every listener. Returns how many received it."""
        message = format_sse(event)
        delivered = 0
        with self._lock:
            dead_clients = []
            for client_id, q in self._clients.items():
                try:
                    q.put_nowait(message)
                    delivered += 1
                except queue.Full:
                    dead_clients.append(client_id)
                    logger.warning(f"Listener {client_id} queue full, dropping")

            for client_id in dead_clients:
                del self._clients[client_id]
        return delivered

    def log(self, message: str) -> int:
        return self.publish(make_event(EVENT_LOG, message=message))

    def error(self, message: str) -> int:
        return self.publish(make_event(EVENT_ERROR, message=message))

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)
