import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .backend import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    MESSAGES_UPSERT,
    SocketFactory,
    WhatsAppSocket,
    is_fatal_close,
    reason_name,
)
from .config import Settings
from .logs import json_log
from .messages import DIRECTION_IN, DIRECTION_OUT, MessageLog, MessageRecord
from .scheduler import ReconnectScheduler
from .storage import SessionStore
from .utils import jid_to_phone, to_jid


class Status(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_QR = "waiting_qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    ERROR = "error"


class EventKind(str, Enum):
    QR = "qr"
    OPEN = "open"
    CLOSE = "close"
    MESSAGES = "messages"
    READY_TIMEOUT = "ready_timeout"


LIVE_STATES = (Status.CONNECTING, Status.WAITING_QR, Status.AUTHENTICATED, Status.READY)

# (event, current status) -> next status. Pairs not listed are ignored.
_TRANSITIONS: Dict[Tuple[EventKind, Status], Status] = {
    (EventKind.QR, Status.CONNECTING): Status.WAITING_QR,
    (EventKind.QR, Status.WAITING_QR): Status.WAITING_QR,
    (EventKind.OPEN, Status.CONNECTING): Status.AUTHENTICATED,
    (EventKind.OPEN, Status.WAITING_QR): Status.AUTHENTICATED,
    (EventKind.MESSAGES, Status.AUTHENTICATED): Status.READY,
    (EventKind.READY_TIMEOUT, Status.AUTHENTICATED): Status.READY,
}
for _state in LIVE_STATES:
    _TRANSITIONS[(EventKind.CLOSE, _state)] = Status.DISCONNECTED

# Scheduled reconnects with these reasons supersede anything still in flight
OPERATOR_REASONS = frozenset({"logout", "force_reset"})


class RelayError(Exception):
    """Base exception for relay errors."""
    pass


class NotReadyError(RelayError):
    """Raised when a send is attempted before the session reached 'ready'."""

    def __init__(self, snapshot: "ConnectionSnapshot"):
        super().__init__("WhatsApp is not ready")
        self.snapshot = snapshot


class InvalidRecipientError(RelayError):
    """Raised when a phone number cannot be turned into a JID."""
    pass


@dataclass(frozen=True)
class SocketEvent:
    kind: EventKind
    generation: int
    qr: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    me: Optional[Dict[str, Any]] = None
    messages: Tuple[Dict[str, Any], ...] = ()


def events_from_update(update: Dict[str, Any], generation: int) -> List[SocketEvent]:
    """
    Split one connection.update payload into state machine events.
    A single update may carry a QR and a connection change; the QR goes first.
    """
    events: List[SocketEvent] = []
    if update.get("qr"):
        events.append(SocketEvent(EventKind.QR, generation, qr=str(update["qr"])))
    connection = update.get("connection")
    if connection == "open":
        events.append(SocketEvent(EventKind.OPEN, generation, me=update.get("me")))
    elif connection == "close":
        events.append(
            SocketEvent(
                EventKind.CLOSE,
                generation,
                status_code=update.get("status_code"),
                error=update.get("error"),
            )
        )
    return events


@dataclass(frozen=True)
class ConnectionSnapshot:
    status: Status
    has_session: bool
    qr: Optional[str]
    qr_count: int
    reconnect_attempts: int
    last_error: Optional[str]
    session_info: Optional[Dict[str, Any]]

    @property
    def is_connected(self) -> bool:
        return self.status in (Status.AUTHENTICATED, Status.READY)

    @property
    def is_authenticated(self) -> bool:
        return self.status in (Status.AUTHENTICATED, Status.READY)

    @property
    def is_ready(self) -> bool:
        return self.status is Status.READY

    def to_json(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "isConnected": self.is_connected,
            "isAuthenticated": self.is_authenticated,
            "isReady": self.is_ready,
            "hasSession": self.has_session,
            "hasQR": self.qr is not None,
            "reconnectAttempts": self.reconnect_attempts,
            "lastError": self.last_error,
            "sessionInfo": self.session_info,
        }


class ConnectionManager:
    """
    Owns the single WhatsApp socket and its lifecycle.

    All state changes go through handle_event() (socket events, ready timeout) or the
    control operations connect() / logout() / force_reset() / send(). Everything runs on
    one event loop, so the only synchronisation needed is the admission gate that keeps
    two connection attempts from overlapping.
    """

    def __init__(
        self,
        settings: Settings,
        socket_factory: SocketFactory,
        session_store: Optional[SessionStore] = None,
        message_log: Optional[MessageLog] = None,
    ):
        self.settings = settings
        self._socket_factory = socket_factory
        self.session_store = session_store or SessionStore(settings.auth_folder, settings.media_folder)
        self.message_log = message_log or MessageLog(settings.message_log_capacity)
        self.scheduler = ReconnectScheduler(self._reconnect)

        self._gate = asyncio.Lock()
        self._attempt_task: Optional[asyncio.Task] = None
        self._outcome: Optional[asyncio.Future] = None
        self._ready_task: Optional[asyncio.Task] = None
        self._socket: Optional[WhatsAppSocket] = None
        self._generation = 0
        self._closed = False

        self._status = Status.DISCONNECTED
        self._qr: Optional[str] = None
        self._qr_count = 0
        self._reconnect_attempts = 0
        self._last_error: Optional[str] = None
        self._session_info: Optional[Dict[str, Any]] = None

        self._handlers = {
            EventKind.QR: self._on_qr,
            EventKind.OPEN: self._on_open,
            EventKind.CLOSE: self._on_close,
            EventKind.MESSAGES: self._on_ready,
            EventKind.READY_TIMEOUT: self._on_ready,
        }

    # --- read side -------------------------------------------------------

    @property
    def status(self) -> Status:
        return self._status

    @property
    def socket(self) -> Optional[WhatsAppSocket]:
        return self._socket

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def connecting(self) -> bool:
        """True while an attempt holds the admission gate and has not reached its outcome."""
        task = self._attempt_task
        if task is None or task.done():
            return False
        return self._outcome is None or not self._outcome.done()

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            status=self._status,
            has_session=self.session_store.exists(),
            qr=self._qr,
            qr_count=self._qr_count,
            reconnect_attempts=self._reconnect_attempts,
            last_error=self._last_error,
            session_info=dict(self._session_info) if self._session_info else None,
        )

    # --- lifecycle -------------------------------------------------------

    async def start(self):
        self._closed = False
        self.session_store.ensure_layout()
        await self.connect()

    async def shutdown(self):
        self._closed = True
        self.scheduler.cancel()
        await self._abort_attempt()
        self._set_status(Status.DISCONNECTED)
        json_log("connection_manager_stopped")

    async def connect(self, force: bool = False) -> bool:
        """
        Start a connection attempt in the background.

        Returns False when the call is dropped because another attempt is in flight.
        force=True (operator actions) detaches and closes the in-flight handle and
        cancels its attempt before starting a new one.
        """
        if self._closed:
            return False
        task = self._attempt_task
        if task is not None and not task.done():
            if self._outcome is not None and self._outcome.done():
                # previous attempt already decided its outcome and is only unwinding
                await asyncio.wait([task])
            elif force:
                json_log("connect_superseding", generation=self._generation)
                await self._abort_attempt()
            else:
                json_log("connect_skipped", reason="attempt_in_flight", generation=self._generation)
                return False
            if self._attempt_task is not task and self._attempt_task is not None:
                json_log("connect_skipped", reason="attempt_started_concurrently")
                return False
        self.scheduler.cancel()
        self._attempt_task = asyncio.create_task(self._run_attempt())
        return True

    async def logout(self):
        """
        Sign the linked device out, wipe local credentials and start a fresh pairing cycle.
        Re-raises the backend error when the server-side logout fails.
        """
        self.scheduler.cancel()
        sock = self._socket
        try:
            if sock is not None:
                # the close event logout() provokes must not race the reset below
                sock.remove_all_listeners()
                if self._status in (Status.AUTHENTICATED, Status.READY):
                    await sock.logout()
        except Exception as e:
            self._last_error = f"logout failed: {e}"
            json_log("logout_error", level=logging.ERROR, error=str(e))
            await self._abort_attempt()
            self._set_status(Status.DISCONNECTED)
            self._schedule_backoff("logout_failed")
            raise
        await self._abort_attempt()
        self.session_store.clear()
        self._reset_session_state()
        json_log("logout_done")
        self.scheduler.schedule(self.settings.fatal_reconnect_delay_ms, "logout")

    async def force_reset(self):
        """
        Abort whatever is in progress, wipe the session and reconnect from scratch.
        Late events from the aborted handle are inert.
        """
        json_log("force_reset_start", status=self._status.value, generation=self._generation)
        self.scheduler.cancel()
        await self._abort_attempt()
        self.session_store.clear()
        self._reset_session_state()
        self.scheduler.schedule(self.settings.force_reset_delay_ms, "force_reset")
        json_log("force_reset_done")

    async def send(self, phone: str, content: Dict[str, Any], preview: str, content_type: str = "text") -> MessageRecord:
        snap = self.snapshot()
        sock = self._socket
        if not snap.is_ready or sock is None:
            raise NotReadyError(snap)
        jid = to_jid(phone, self.settings.default_country_code)
        if not jid:
            raise InvalidRecipientError(f"invalid phone number: {phone!r}")
        message_id = await sock.send_message(jid, content)
        record = MessageRecord(
            id=str(message_id or f"sent-{int(time.time() * 1000)}"),
            direction=DIRECTION_OUT,
            peer=jid_to_phone(jid) or jid,
            text=preview,
            content_type=content_type,
        )
        self.message_log.append(record)
        json_log("message_sent", peer=record.peer, content_type=content_type, message_id=record.id)
        return record

    # --- events ----------------------------------------------------------

    async def handle_event(self, event: SocketEvent):
        if event.generation != self._generation:
            json_log("stale_event_ignored", kind=event.kind.value, generation=event.generation, current=self._generation)
            return
        if event.kind is EventKind.MESSAGES:
            self._record_inbound(event.messages)
        target = _TRANSITIONS.get((event.kind, self._status))
        if target is None:
            if event.kind is not EventKind.MESSAGES:
                json_log("event_ignored", kind=event.kind.value, status=self._status.value)
            return
        await self._handlers[event.kind](event, target)

    async def _on_qr(self, event: SocketEvent, target: Status):
        if self._qr_count >= self.settings.max_qr_attempts:
            await self._exhaust_qr_budget()
            return
        self._qr_count += 1
        self._set_status(target)
        self._qr = event.qr
        json_log("qr_issued", count=self._qr_count, max=self.settings.max_qr_attempts)

    async def _exhaust_qr_budget(self):
        self._last_error = f"QR code not scanned after {self.settings.max_qr_attempts} attempts"
        json_log("qr_budget_exhausted", level=logging.WARNING, max=self.settings.max_qr_attempts)
        self._resolve_outcome("qr_exhausted")
        await self._discard_socket()
        self._set_status(Status.ERROR)
        self._schedule_backoff("qr_exhausted")

    async def _on_open(self, event: SocketEvent, target: Status):
        self._session_info = dict(event.me) if event.me else None
        self._last_error = None
        self._set_status(target)
        self._resolve_outcome("open")
        self._arm_ready_timer(event.generation)
        json_log("connection_open", session=self._session_info)

    async def _on_ready(self, event: SocketEvent, target: Status):
        self._cancel_ready_timer()
        self._set_status(target)
        json_log("session_ready", trigger=event.kind.value)

    async def _on_close(self, event: SocketEvent, target: Status):
        fatal = is_fatal_close(event.status_code)
        reason = reason_name(event.status_code)
        json_log(
            "connection_closed",
            level=logging.WARNING,
            status_code=event.status_code,
            reason=reason,
            fatal=fatal,
            error=event.error,
        )
        self._resolve_outcome("close")
        await self._discard_socket()
        self._set_status(target)
        if fatal:
            self.session_store.clear()
            self._session_info = None
            self._reconnect_attempts = 0
            json_log("session_cleared", reason=reason)
            self.scheduler.schedule(self.settings.fatal_reconnect_delay_ms, f"session_invalidated:{reason}")
        else:
            if event.error:
                self._last_error = event.error
            self._schedule_backoff(f"transient_close:{reason}")

    def _record_inbound(self, messages: Tuple[Dict[str, Any], ...]):
        now = int(time.time() * 1000)
        for m in messages:
            if m.get("from_me"):
                continue
            content_type = m.get("content_type") or "text"
            peer = jid_to_phone(m.get("peer")) or "unknown"
            text = m.get("text") or f"[{content_type}]"
            record = MessageRecord(
                id=str(m.get("id") or f"in-{now}"),
                direction=DIRECTION_IN,
                peer=peer,
                text=text,
                content_type=content_type,
                timestamp=int(m.get("timestamp") or now),
                sender_display_name=m.get("push_name"),
            )
            self.message_log.append(record)
            json_log("message_received", peer=peer, preview=text[:50])

    # --- attempt internals -------------------------------------------------

    async def _run_attempt(self):
        async with self._gate:
            await self._discard_socket()
            self._generation += 1
            generation = self._generation
            self._outcome = asyncio.get_running_loop().create_future()
            self._qr_count = 0
            self._last_error = None
            self._set_status(Status.CONNECTING)
            json_log(
                "connect_attempt",
                generation=generation,
                reconnect_attempts=self._reconnect_attempts,
                has_session=self.session_store.exists(),
            )
            try:
                sock = self._socket_factory()
                self._socket = sock
                self._bind(sock, generation)
                await sock.connect()
                outcome = await self._outcome
                json_log("connect_attempt_done", generation=generation, outcome=outcome)
            except asyncio.CancelledError:
                json_log("connect_attempt_cancelled", generation=generation)
                raise
            except Exception as e:
                self._resolve_outcome("error")
                await self._fail_attempt(e)

    async def _fail_attempt(self, exc: Exception):
        self._last_error = str(exc) or exc.__class__.__name__
        json_log("connect_error", level=logging.ERROR, generation=self._generation, error=self._last_error)
        await self._discard_socket()
        self._set_status(Status.ERROR)
        self._schedule_backoff("connect_error")

    def _bind(self, sock: WhatsAppSocket, generation: int):
        async def on_connection_update(update: Dict[str, Any]):
            for event in events_from_update(update or {}, generation):
                await self.handle_event(event)

        async def on_messages_upsert(upsert: Dict[str, Any]):
            upsert = upsert or {}
            notify = upsert.get("type", "notify") == "notify"
            messages = tuple(upsert.get("messages") or ()) if notify else ()
            await self.handle_event(SocketEvent(EventKind.MESSAGES, generation, messages=messages))

        def on_creds_update(creds: Dict[str, Any]):
            if generation == self._generation:
                self.session_store.persist(creds)

        sock.on(CONNECTION_UPDATE, on_connection_update)
        sock.on(MESSAGES_UPSERT, on_messages_upsert)
        sock.on(CREDS_UPDATE, on_creds_update)

    async def _discard_socket(self):
        sock, self._socket = self._socket, None
        self._cancel_ready_timer()
        if sock is None:
            return
        # detach first: nothing the old handle emits from here on may reach the state machine
        sock.remove_all_listeners()
        self._generation += 1
        try:
            await sock.end()
        except Exception as e:
            json_log("socket_end_error", level=logging.WARNING, error=str(e))

    async def _abort_attempt(self):
        await self._discard_socket()
        task, self._attempt_task = self._attempt_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])
        self._resolve_outcome("aborted")

    async def _reconnect(self, reason: str):
        await self.connect(force=reason in OPERATOR_REASONS)

    def _schedule_backoff(self, reason: str):
        self._reconnect_attempts += 1
        delay = min(self.settings.reconnect_base_ms * self._reconnect_attempts, self.settings.reconnect_cap_ms)
        self.scheduler.schedule(delay, reason)

    def _resolve_outcome(self, outcome: str):
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)

    def _set_status(self, status: Status):
        old = self._status
        self._status = status
        if status is not Status.WAITING_QR:
            self._qr = None
        if status is Status.READY:
            self._reconnect_attempts = 0
        if old is not status:
            json_log("status_changed", old=old.value, new=status.value)

    def _reset_session_state(self):
        self._set_status(Status.DISCONNECTED)
        self._session_info = None
        self._reconnect_attempts = 0
        self._qr_count = 0
        self._last_error = None

    # --- ready timer -------------------------------------------------------

    def _arm_ready_timer(self, generation: int):
        self._cancel_ready_timer()
        self._ready_task = asyncio.create_task(self._ready_after_timeout(generation))

    def _cancel_ready_timer(self):
        task, self._ready_task = self._ready_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _ready_after_timeout(self, generation: int):
        try:
            await asyncio.sleep(self.settings.ready_timeout_ms / 1000.0)
            if self._ready_task is asyncio.current_task():
                self._ready_task = None
            json_log("ready_timeout", generation=generation)
            await self.handle_event(SocketEvent(EventKind.READY_TIMEOUT, generation))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("ready_timer_error", level=logging.ERROR, error=str(e))
