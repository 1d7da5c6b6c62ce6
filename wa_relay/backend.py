import inspect
import logging
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

from .logs import json_log

# Event names emitted by every backend
CONNECTION_UPDATE = "connection.update"
MESSAGES_UPSERT = "messages.upsert"
CREDS_UPDATE = "creds.update"


class DisconnectReason(IntEnum):
    """Close status codes reported with connection.update {connection: "close"}."""

    logged_out = 401
    forbidden = 403
    connection_lost = 408
    multidevice_mismatch = 411
    connection_closed = 428
    connection_replaced = 440
    bad_session = 500
    unavailable_service = 503
    restart_required = 515


# Close codes after which the stored session can no longer be used
FATAL_REASONS = frozenset({
    DisconnectReason.logged_out,
    DisconnectReason.forbidden,
    DisconnectReason.multidevice_mismatch,
    DisconnectReason.bad_session,
})


def is_fatal_close(status_code: Optional[int]) -> bool:
    """
    Fatal closes require wiping the session and pairing again. Anything else,
    including unknown or missing codes, is retried as transient.
    """
    if status_code is None:
        return False
    try:
        return DisconnectReason(int(status_code)) in FATAL_REASONS
    except (TypeError, ValueError):
        return False


def reason_name(status_code: Optional[int]) -> str:
    if status_code is None:
        return "unknown"
    try:
        return DisconnectReason(int(status_code)).name
    except (TypeError, ValueError):
        return str(status_code)


Listener = Callable[[Dict[str, Any]], Any]


class WhatsAppSocket(ABC):
    """
    Capability surface of a WhatsApp client backend.

    Backends report progress only through events:
      - connection.update: {"qr": str} | {"connection": "open", "me": {...}}
                           | {"connection": "close", "status_code": int, "error": str}
      - messages.upsert:   {"type": "notify", "messages": [{id, peer, text, content_type,
                            timestamp, push_name, from_me}]}
      - creds.update:      opaque credentials dict to persist
    Listeners run in registration order and each is awaited before the next event.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener):
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener):
        items = self._listeners.get(event) or []
        if listener in items:
            items.remove(listener)

    def remove_all_listeners(self):
        self._listeners.clear()

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event) or [])
        return sum(len(v) for v in self._listeners.values())

    async def emit(self, event: str, payload: Dict[str, Any]):
        for listener in list(self._listeners.get(event) or []):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A failing listener must not kill the backend's event loop
                json_log("listener_error", level=logging.ERROR, socket_event=event, error=repr(e))

    @abstractmethod
    async def connect(self) -> None:
        """Start the connection; progress is reported via connection.update."""

    @abstractmethod
    async def send_message(self, jid: str, content: Dict[str, Any]) -> str:
        """
        Send one message. content is one of:
          {"text"}, {"image", "caption"}, {"video", "caption"},
          {"audio", "mimetype", "ptt"}, {"document", "fileName", "mimetype"}
        Returns the message id.
        """

    @abstractmethod
    async def logout(self) -> None:
        """Sign the linked device out on the server side."""

    @abstractmethod
    async def end(self) -> None:
        """Close the connection and release resources. Must be idempotent."""


SocketFactory = Callable[[], WhatsAppSocket]
