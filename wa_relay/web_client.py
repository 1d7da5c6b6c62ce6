import asyncio
import contextlib
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple
from urllib.parse import quote

from playwright.async_api import BrowserContext, Page, async_playwright

from .backend import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    MESSAGES_UPSERT,
    DisconnectReason,
    WhatsAppSocket,
)
from .logs import json_log
from .storage import SessionStore
from .utils import jid_to_phone

WHATSAPP_WEB_URL = "https://web.whatsapp.com/"

# The QR container carries the raw pairing payload in data-ref; the canvas is the fallback
QR_REF_SELECTOR = "div[data-ref]"
QR_CANVAS_SELECTORS = [
    'canvas[aria-label="Scan this QR code to link a device!"]',
    'canvas[aria-label="Scan me!"]',
    'div[data-testid="qrcode"] canvas',
]

LOGIN_MARKERS = [
    'div[data-testid="chat-list"]',
    'div[aria-label="Chat list"]',
    'header[data-testid="chatlist-header"]',
    'div[data-testid="chat-list-search"]',
]

COMPOSER_SELECTOR = 'footer div[contenteditable="true"][role="textbox"]'
CAPTION_SELECTOR = 'div[contenteditable="true"][role="textbox"]'
SEND_SELECTORS = [
    "[data-testid='send']",
    "button[aria-label='Send']",
    "span[data-icon='send']",
    "[data-testid='compose-btn-send']",
]
ATTACH_SELECTORS = [
    "div[title='Attach']",
    "button[title='Attach']",
    "span[data-icon='plus']",
    "span[data-icon='attach-menu-plus']",
]
# image/video go through the media picker so WhatsApp shows them inline
MEDIA_INPUT_SELECTOR = "input[type='file'][accept*='image']"
DOCUMENT_INPUT_SELECTOR = "input[type='file']:not([accept*='image'])"

# Reports newly rendered incoming rows of the open conversation back to Python
INBOUND_OBSERVER_JS = """
(() => {
  if (window.__relayObserverInstalled) return;
  window.__relayObserverInstalled = true;
  const seen = new Set();
  const report = (row) => {
    const id = row.getAttribute('data-id') || '';
    if (!id || seen.has(id) || !id.startsWith('false_')) return;
    seen.add(id);
    const parts = id.split('_');
    const textEl = row.querySelector('span.selectable-text');
    const meta = row.querySelector('[data-pre-plain-text]');
    const hasImg = !!row.querySelector('img[src^="blob:"]');
    const hasAudio = !!row.querySelector('span[data-icon="audio-play"], span[data-icon="ptt-play"]');
    let type = 'text';
    if (hasAudio) type = 'audio'; else if (hasImg) type = 'image';
    try {
      window.__relayInbound({
        id: parts.slice(2).join('_') || id,
        peer: parts[1] || '',
        text: textEl ? textEl.innerText : '',
        content_type: textEl || type === 'text' ? 'text' : type,
        pre: meta ? meta.getAttribute('data-pre-plain-text') : '',
        timestamp: Date.now(),
      });
    } catch (e) {}
  };
  const scan = (root) => {
    if (!root || !root.querySelectorAll) return;
    if (root.getAttribute && root.getAttribute('data-id')) report(root);
    root.querySelectorAll('[data-id]').forEach(report);
  };
  const observer = new MutationObserver((mutations) => {
    for (const m of mutations) m.addedNodes.forEach(scan);
  });
  const start = () => {
    if (!document.body) { setTimeout(start, 500); return; }
    observer.observe(document.body, { childList: true, subtree: true });
  };
  start();
})();
"""


def _attachment(content: Dict[str, Any]) -> Tuple[bytes, str, str]:
    """
    Pick the payload, spool suffix and file input for a media message.
    WhatsApp Web only records voice notes from the microphone, so audio (ptt or not)
    is uploaded through the document picker and arrives as an .ogg file.
    """
    if "image" in content:
        return content["image"], ".jpg", MEDIA_INPUT_SELECTOR
    if "video" in content:
        return content["video"], ".mp4", MEDIA_INPUT_SELECTOR
    if "audio" in content:
        if content.get("ptt"):
            json_log("wa_web_ptt_as_file", level=logging.WARNING, size=len(content["audio"]))
        return content["audio"], ".ogg", DOCUMENT_INPUT_SELECTOR
    if "document" in content:
        suffix = Path(content.get("fileName") or "document").suffix or ".bin"
        return content["document"], suffix, DOCUMENT_INPUT_SELECTOR
    raise ValueError("unsupported message content")


def _sender_from_pre(pre: str) -> Optional[str]:
    # data-pre-plain-text looks like "[10:21, 5/3/2025] Maria Silva: "
    if not pre or "]" not in pre:
        return None
    name = pre.split("]", 1)[1].strip().rstrip(":").strip()
    return name or None


class WebWhatsAppSocket(WhatsAppSocket):
    """
    WhatsApp Web driven through Playwright
    - Persistent browser profile inside the session's auth directory
    - QR payload read from the pairing screen
    - Login/logout detected by polling the page
    - Incoming messages reported by a MutationObserver binding
    """

    def __init__(self, store: SessionStore, headless: bool = True, poll_interval: float = 2.0):
        super().__init__()
        self.store = store
        self.headless = headless
        self.poll_interval = poll_interval
        self.playwright = None
        self.ctx: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._close_tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._open = False
        self._last_qr: Optional[str] = None
        self._closed_emitted = False

    async def connect(self) -> None:
        json_log("wa_web_starting", profile=str(self.store.profile_dir), headless=self.headless)
        self.store.profile_dir.mkdir(parents=True, exist_ok=True)
        self.playwright = await async_playwright().start()
        self.ctx = await self.playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.store.profile_dir),
            headless=bool(self.headless),
            viewport={"width": 1280, "height": 900},
            args=[
                "--no-sandbox",
                "--disable-dev-shm-usage",
                "--disable-blink-features=AutomationControlled",
                "--disable-background-timer-throttling",
                "--disable-renderer-backgrounding",
            ],
        )
        await self.ctx.expose_binding("__relayInbound", self._on_inbound)
        await self.ctx.add_init_script(INBOUND_OBSERVER_JS)
        self.page = self.ctx.pages[0] if self.ctx.pages else await self.ctx.new_page()
        self.page.set_default_timeout(60000)
        self.page.on("close", self._on_page_close)
        self.page.on("crash", self._on_page_close)
        await self.page.goto(WHATSAPP_WEB_URL, timeout=120000, wait_until="domcontentloaded")
        self._watch_task = asyncio.create_task(self._watch_loop())

    async def _watch_loop(self):
        """
        Poll the page: QR screen -> connection.update {qr}, chat list -> {connection: open}.
        A QR screen after having been open means the device was unlinked from the phone.
        """
        while not self._stop.is_set():
            try:
                if self.page is None or self.page.is_closed():
                    await self._emit_close(DisconnectReason.connection_closed, "page closed")
                    return
                if self._send_lock.locked():
                    await asyncio.sleep(self.poll_interval)
                    continue
                if await self._is_logged_in():
                    if not self._open:
                        self._open = True
                        self._last_qr = None
                        me = await self._read_me()
                        await self.emit(CREDS_UPDATE, {"wid": me.get("id"), "linked_at": int(time.time())})
                        await self.emit(CONNECTION_UPDATE, {"connection": "open", "me": me})
                else:
                    qr = await self._read_qr()
                    if qr and self._open:
                        await self._emit_close(DisconnectReason.logged_out, "device unlinked")
                        return
                    if qr and qr != self._last_qr:
                        self._last_qr = qr
                        await self.emit(CONNECTION_UPDATE, {"qr": qr})
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                json_log("wa_web_watch_error", level=logging.WARNING, error=str(e))
                await self._emit_close(DisconnectReason.connection_lost, str(e))
                return

    async def _is_logged_in(self) -> bool:
        for marker in LOGIN_MARKERS:
            with contextlib.suppress(Exception):
                locator = self.page.locator(marker)
                if await locator.count() > 0 and await locator.first.is_visible():
                    return True
        return False

    async def _read_qr(self) -> Optional[str]:
        with contextlib.suppress(Exception):
            ref = self.page.locator(QR_REF_SELECTOR).first
            if await ref.count() > 0:
                value = await ref.get_attribute("data-ref")
                if value:
                    return value
        for sel in QR_CANVAS_SELECTORS:
            with contextlib.suppress(Exception):
                canvas = self.page.locator(sel).first
                if await canvas.count() > 0:
                    data_url = await canvas.evaluate("(c) => c.toDataURL('image/png')")
                    if isinstance(data_url, str) and data_url.startswith("data:image/png;base64,"):
                        return data_url
        return None

    async def _read_me(self) -> Dict[str, Any]:
        raw = None
        with contextlib.suppress(Exception):
            raw = await self.page.evaluate(
                "() => localStorage.getItem('last-wid-md') || localStorage.getItem('last-wid')"
            )
        wid = None
        if isinstance(raw, str) and raw:
            try:
                wid = json.loads(raw)
            except ValueError:
                wid = raw.strip('"')
        return {"id": wid, "phone": jid_to_phone(wid), "name": None}

    async def _on_inbound(self, source, payload: Dict[str, Any]):
        if not isinstance(payload, dict):
            return
        message = {
            "id": payload.get("id"),
            "peer": payload.get("peer"),
            "text": payload.get("text") or "",
            "content_type": payload.get("content_type") or "text",
            "timestamp": payload.get("timestamp"),
            "push_name": _sender_from_pre(payload.get("pre") or ""),
            "from_me": False,
        }
        await self.emit(MESSAGES_UPSERT, {"type": "notify", "messages": [message]})

    def _on_page_close(self, *_):
        if not self._stop.is_set():
            task = asyncio.create_task(self._emit_close(DisconnectReason.connection_closed, "page closed"))
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)

    async def _emit_close(self, code: DisconnectReason, error: str):
        if self._closed_emitted:
            return
        self._closed_emitted = True
        self._open = False
        await self.emit(CONNECTION_UPDATE, {"connection": "close", "status_code": int(code), "error": error})

    def _require_page(self) -> Page:
        if self.page is None or self.page.is_closed() or not self._open:
            raise RuntimeError("WhatsApp Web session is not open")
        return self.page

    async def send_message(self, jid: str, content: Dict[str, Any]) -> str:
        page = self._require_page()
        phone = jid_to_phone(jid) or ""
        async with self._send_lock:
            if "text" in content:
                url = f"{WHATSAPP_WEB_URL}send?phone={phone}&text={quote(content['text'] or '', safe='')}"
                await page.goto(url, wait_until="domcontentloaded")
                await page.locator(COMPOSER_SELECTOR).first.wait_for(state="visible")
                await self._click_send(page)
            else:
                await self._send_media(page, phone, content)
        return f"web-{uuid.uuid4().hex[:20].upper()}"

    async def _send_media(self, page: Page, phone: str, content: Dict[str, Any]):
        data, suffix, selector = _attachment(content)
        path = self.store.spool_media(data, suffix=suffix)
        try:
            await page.goto(f"{WHATSAPP_WEB_URL}send?phone={phone}", wait_until="domcontentloaded")
            await page.locator(COMPOSER_SELECTOR).first.wait_for(state="visible")
            for sel in ATTACH_SELECTORS:
                with contextlib.suppress(Exception):
                    btn = page.locator(sel).first
                    if await btn.count() > 0:
                        await btn.click()
                        break
            await page.locator(selector).first.set_input_files(str(path))
            caption = content.get("caption")
            if caption:
                box = page.locator(CAPTION_SELECTOR).last
                await box.click()
                await box.fill(caption)
            await self._click_send(page)
        finally:
            path.unlink(missing_ok=True)

    async def _click_send(self, page: Page):
        for sel in SEND_SELECTORS:
            try:
                btn = page.locator(sel).first
                await btn.wait_for(state="visible", timeout=15000)
                await btn.click()
                await page.wait_for_timeout(1500)
                return
            except Exception:
                continue
        raise RuntimeError("send button not found")

    async def logout(self) -> None:
        """
        Drop every trace of the linked device from the browser storage, then report
        the close the same way the server does after an unlink.
        """
        if self.page is None or self.page.is_closed():
            raise RuntimeError("WhatsApp Web page is not available")
        await self.page.context.clear_cookies()
        await self.page.evaluate(
            """
            () => {
              try { localStorage.clear(); } catch(e) {}
              try { sessionStorage.clear(); } catch(e) {}
              try {
                if (window.indexedDB && indexedDB.databases) {
                  return indexedDB.databases().then(dbs => {
                    dbs.forEach(db => { try { indexedDB.deleteDatabase(db.name); } catch(e) {} });
                  });
                }
              } catch(e) {}
              return null;
            }
            """
        )
        await self._emit_close(DisconnectReason.logged_out, "logged out")

    async def end(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        for pending in list(self._close_tasks):
            if pending is not asyncio.current_task():
                pending.cancel()
        task, self._watch_task = self._watch_task, None
        # end() may be reached from inside the watch loop's own emit
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.ctx is not None:
            with contextlib.suppress(Exception):
                await self.ctx.close()
        if self.playwright is not None:
            with contextlib.suppress(Exception):
                await self.playwright.stop()
        self.ctx = None
        self.page = None
        self.playwright = None
        json_log("wa_web_stopped")
