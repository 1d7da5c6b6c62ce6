import asyncio
import logging
import os
import time
from datetime import datetime
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .connection import ConnectionManager
from .control import get_manager, invalid_request, router as control_router
from .logs import json_log, setup_logging
from .media import qr_data_url
from .storage import SessionStore
from .web_client import WebWhatsAppSocket
from .webui import router as web_router

APP_TITLE = "WhatsApp HTTP Relay"
VERSION = "1.0.0"


def build_manager(settings: Settings) -> ConnectionManager:
    store = SessionStore(settings.auth_folder, settings.media_folder)

    def socket_factory():
        return WebWhatsAppSocket(store, headless=settings.run_headless)

    return ConnectionManager(settings, socket_factory, session_store=store)


async def keepalive_loop(url: str, interval_ms: int):
    """
    Ping our own /health so free-tier hosts that sleep on inactivity keep the socket alive.
    """
    target = url.rstrip("/") + "/health"
    async with httpx.AsyncClient(timeout=30) as client:
        while True:
            await asyncio.sleep(max(1000, interval_ms) / 1000.0)
            try:
                r = await client.get(target)
                json_log("keepalive_ping", url=target, status=r.status_code)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                json_log("keepalive_error", level=logging.WARNING, url=target, error=str(e))


def create_app(settings: Optional[Settings] = None, manager: Optional[ConnectionManager] = None) -> FastAPI:
    setup_logging()
    settings = settings or (manager.settings if manager is not None else Settings.from_env())
    manager = manager or build_manager(settings)

    app = FastAPI(title=APP_TITLE, version=VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, invalid_request)
    app.state.settings = settings
    app.state.manager = manager
    app.state.started_at = time.time()
    background: List[asyncio.Task] = []

    @app.on_event("startup")
    async def on_startup():
        manager.session_store.ensure_layout()
        json_log("startup", version=VERSION, settings=settings.to_json())
        await manager.start()
        if settings.self_url:
            background.append(asyncio.create_task(keepalive_loop(settings.self_url, settings.keepalive_interval_ms)))

    @app.on_event("shutdown")
    async def on_shutdown():
        json_log("shutdown")
        for t in background:
            t.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await manager.shutdown()

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": VERSION,
            "uptime": int(time.time() - app.state.started_at),
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

    @app.get("/status")
    async def status(manager: ConnectionManager = Depends(get_manager)):
        snap = manager.snapshot()
        return {
            "ok": True,
            "success": True,
            "version": VERSION,
            **snap.to_json(),
            "timestamp": int(time.time() * 1000),
        }

    @app.get("/whatsapp-status")
    async def whatsapp_status(manager: ConnectionManager = Depends(get_manager)):
        snap = manager.snapshot()
        return {
            "ok": True,
            "success": True,
            "version": VERSION,
            "connected": snap.is_connected,
            "ready": snap.is_ready,
            **snap.to_json(),
            "qrCode": qr_data_url(snap.qr),
            "timestamp": int(time.time() * 1000),
        }

    @app.get("/debug")
    async def debug(manager: ConnectionManager = Depends(get_manager)):
        snap = manager.snapshot()
        return {
            "version": VERSION,
            **snap.to_json(),
            "qrCount": snap.qr_count,
            "maxQrAttempts": settings.max_qr_attempts,
            "messagesCount": manager.message_log.total,
            "generation": manager.generation,
            "connecting": manager.connecting,
            "reconnectPending": manager.scheduler.pending,
            "reconnectReason": manager.scheduler.reason,
            "uptime": int(time.time() - app.state.started_at),
        }

    app.include_router(control_router)
    app.include_router(web_router)
    return app


app = create_app()


def run():
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    uvicorn.run("wa_relay.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
