import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from wa_relay.backend import CONNECTION_UPDATE, MESSAGES_UPSERT, WhatsAppSocket
from wa_relay.config import Settings
from wa_relay.connection import ConnectionManager
from wa_relay.storage import SessionStore


class FakeSocket(WhatsAppSocket):
    """In-memory backend; tests drive it by calling emit() directly."""

    def __init__(self, store: SessionStore, block_connect: bool = False, fail_connect: Optional[Exception] = None):
        super().__init__()
        self.store_had_session = store.exists()
        self.block_connect = block_connect
        self.fail_connect = fail_connect
        self.logout_error: Optional[Exception] = None
        self.connected = False
        self.ended = False
        self.logged_out = False
        self.sent: List[Dict[str, Any]] = []
        self._release = asyncio.Event()

    async def connect(self) -> None:
        self.connected = True
        if self.fail_connect is not None:
            raise self.fail_connect
        if self.block_connect:
            await self._release.wait()

    async def send_message(self, jid: str, content: Dict[str, Any]) -> str:
        self.sent.append({"jid": jid, **content})
        return f"FAKE-{len(self.sent)}"

    async def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.logged_out = True

    async def end(self) -> None:
        self.ended = True

    async def qr(self, payload: str = "2@pairing-ref"):
        await self.emit(CONNECTION_UPDATE, {"qr": payload})

    async def open(self, wid: str = "5511999990000@s.whatsapp.net"):
        await self.emit(CONNECTION_UPDATE, {"connection": "open", "me": {"id": wid}})

    async def close(self, status_code: Optional[int], error: str = "closed"):
        await self.emit(CONNECTION_UPDATE, {"connection": "close", "status_code": status_code, "error": error})

    async def incoming(self, *messages: Dict[str, Any]):
        await self.emit(MESSAGES_UPSERT, {"type": "notify", "messages": list(messages)})


class FakeSocketFactory:
    def __init__(self, store: SessionStore):
        self.store = store
        self.sockets: List[FakeSocket] = []
        self.block_connect = False
        self.fail_connect: Optional[Exception] = None

    def __call__(self) -> FakeSocket:
        sock = FakeSocket(self.store, block_connect=self.block_connect, fail_connect=self.fail_connect)
        self.sockets.append(sock)
        return sock

    @property
    def latest(self) -> Optional[FakeSocket]:
        return self.sockets[-1] if self.sockets else None


async def wait_for(predicate, *, timeout: float = 1.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_folder=tmp_path / "data",
        reconnect_base_ms=20,
        reconnect_cap_ms=60,
        fatal_reconnect_delay_ms=10,
        force_reset_delay_ms=10,
        max_qr_attempts=3,
        ready_timeout_ms=5000,
    )


@pytest.fixture
def store(settings) -> SessionStore:
    s = SessionStore(settings.auth_folder, settings.media_folder)
    s.ensure_layout()
    return s


@pytest.fixture
def factory(store) -> FakeSocketFactory:
    return FakeSocketFactory(store)


@pytest_asyncio.fixture
async def manager(settings, store, factory):
    mgr = ConnectionManager(settings, factory, session_store=store)
    yield mgr
    await mgr.shutdown()


async def start_attempt(manager: ConnectionManager, factory: FakeSocketFactory, force: bool = False) -> FakeSocket:
    count = len(factory.sockets)
    assert await manager.connect(force=force)
    assert await wait_for(lambda: len(factory.sockets) > count and factory.latest.connected)
    return factory.latest


async def bring_ready(manager: ConnectionManager, factory: FakeSocketFactory) -> FakeSocket:
    sock = await start_attempt(manager, factory)
    await sock.qr()
    await sock.open()
    await sock.incoming()
    assert manager.snapshot().is_ready
    return sock
