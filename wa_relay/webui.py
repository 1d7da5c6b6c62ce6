import json
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .connection import ConnectionManager
from .control import get_manager
from .media import qr_data_url, qr_png

router = APIRouter()


def html_page(body: str, script: str = "") -> HTMLResponse:
    html_doc = f"""
<!doctype html>
<html>
  <head>
    <meta charset="utf-8"/>
    <title>WhatsApp Relay</title>
    <meta name="viewport" content="width=device-width, initial-scale=1"/>
    <style>
      :root {{
        --bg: #0f1120;
        --card: #16182a;
        --muted: #8a8fa6;
        --text: #e7e9f5;
        --ok: #3ddc97;
        --wait: #ffc857;
        --err: #ff6b6b;
        --ready: #00d4ff;
      }}
      * {{ box-sizing: border-box; }}
      body {{
        margin: 0;
        font-family: Inter, system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif;
        color: var(--text);
        background:
          radial-gradient(1200px 600px at 10% -10%, rgba(124,77,255,0.18), transparent 70%),
          radial-gradient(1000px 500px at 110% 10%, rgba(0,212,255,0.15), transparent 60%),
          linear-gradient(180deg, #0b0d1a, #0f1120);
        min-height: 100vh;
        display: flex; align-items: center; justify-content: center; padding: 20px;
      }}
      .card {{
        background: var(--card);
        border: 1px solid rgba(255,255,255,0.06);
        border-radius: 14px;
        padding: 28px;
        max-width: 420px; width: 100%;
        text-align: center;
        box-shadow: 0 10px 25px rgba(0,0,0,0.25);
      }}
      h1 {{ margin: 0 0 6px; font-size: 20px; }}
      .muted {{ color: var(--muted); font-size: 13px; }}
      .badge {{
        display: inline-block; margin: 16px 0; padding: 6px 14px; border-radius: 999px;
        font-size: 13px; border: 1px solid rgba(255,255,255,0.2);
      }}
      .badge.ready {{ color: var(--ready); }}
      .badge.authenticated {{ color: var(--ok); }}
      .badge.waiting_qr, .badge.connecting {{ color: var(--wait); }}
      .badge.disconnected, .badge.error {{ color: var(--err); }}
      #qr {{ background: #fff; border-radius: 12px; padding: 14px; min-height: 120px; color: #333; }}
      #qr img {{ width: 100%; max-width: 260px; }}
      .actions {{ margin-top: 16px; display: flex; gap: 10px; justify-content: center; }}
      .button {{
        padding: 8px 14px; border-radius: 10px; cursor: pointer; color: #fff;
        border: 1px solid rgba(255,255,255,0.12);
        background: linear-gradient(135deg, rgba(124,77,255,0.25), rgba(0,212,255,0.18));
      }}
      .button.danger {{ background: linear-gradient(135deg, rgba(255,107,107,0.25), rgba(255,0,102,0.18)); }}
      pre {{ text-align: left; font-size: 11px; color: var(--muted); white-space: pre-wrap; }}
    </style>
  </head>
  <body>
    {body}
    <script>{script}</script>
  </body>
</html>
"""
    return HTMLResponse(html_doc)


CONNECT_SCRIPT = """
const TOKEN = %s;
const withToken = (path) => TOKEN ? path + (path.includes('?') ? '&' : '?') + 'token=' + encodeURIComponent(TOKEN) : path;
const LABELS = {
  disconnected: 'Disconnected', connecting: 'Connecting...', waiting_qr: 'Waiting for QR scan',
  authenticated: 'Connected', ready: 'Ready', error: 'Error'
};
async function refresh() {
  try {
    const r = await fetch('/whatsapp-status');
    const s = await r.json();
    const badge = document.getElementById('status');
    badge.className = 'badge ' + s.status;
    badge.textContent = LABELS[s.status] || s.status;
    const qr = document.getElementById('qr');
    if (s.isConnected) {
      qr.innerHTML = '<p>WhatsApp is linked.</p>';
    } else if (s.qrCode) {
      qr.innerHTML = '<img alt="QR code" src="' + s.qrCode + '"/>';
    } else {
      qr.innerHTML = '<p>Waiting for a QR code...</p>';
    }
    document.getElementById('debug').textContent = JSON.stringify({
      status: s.status, hasSession: s.hasSession, reconnectAttempts: s.reconnectAttempts, lastError: s.lastError
    }, null, 2);
  } catch (e) {
    document.getElementById('debug').textContent = 'status request failed: ' + e;
  }
}
async function reset() {
  if (!confirm('Wipe the session and pair again?')) return;
  await fetch(withToken('/force-reset'), { method: 'POST' });
  setTimeout(refresh, 1500);
}
refresh();
setInterval(refresh, 3000);
"""


@router.get("/connect")
def connect_page(token: Optional[str] = Query(default=None)):
    body = """
    <div class="card">
      <h1>WhatsApp Relay</h1>
      <div class="muted">Scan the code with WhatsApp &rarr; Linked devices</div>
      <div id="status" class="badge disconnected">Checking...</div>
      <div id="qr">Loading...</div>
      <div class="actions">
        <button class="button" onclick="refresh()">Refresh</button>
        <button class="button danger" onclick="reset()">Reset</button>
      </div>
      <pre id="debug"></pre>
    </div>
    """
    # json.dumps gives a JS string literal; escape '<' so a token can't close the script tag
    script = CONNECT_SCRIPT % json.dumps(token or "").replace("<", "\\u003c")
    return html_page(body, script)


@router.get("/qr")
async def qr_json(manager: ConnectionManager = Depends(get_manager)):
    snap = manager.snapshot()
    if snap.is_connected:
        return {"ok": True, "connected": True, "message": "Already connected"}
    if snap.qr:
        data_url = qr_data_url(snap.qr)
        return {"ok": True, "qr": data_url, "qrCode": data_url, "status": snap.status.value}
    return JSONResponse(
        {"ok": False, "message": "QR code not available yet", "status": snap.status.value},
        status_code=202,
    )


@router.get("/qr.png")
async def qr_image(manager: ConnectionManager = Depends(get_manager)):
    snap = manager.snapshot()
    if not snap.qr:
        return Response("QR code not available", status_code=404, media_type="text/plain")
    return Response(qr_png(snap.qr), media_type="image/png")
