import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from .connection import ConnectionManager, ConnectionSnapshot, InvalidRecipientError, NotReadyError
from .logs import json_log
from .media import OPUS_MIMETYPE, MediaError, decode_base64_payload, split_data_url, to_ogg_opus
from .utils import format_phone


def get_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


def check_auth(request: Request):
    expected = request.app.state.settings.api_token
    if not expected:
        return
    token = request.headers.get("X-Token") or request.query_params.get("token")
    if token != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(dependencies=[Depends(check_auth)])


# Every field is optional so a missing one gets our own 400 body; malformed bodies go through invalid_request
class _Body(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")

    phone: Optional[str] = None
    to: Optional[str] = None

    @property
    def recipient(self) -> Optional[str]:
        return self.phone or self.to


class SendTextBody(_Body):
    message: Optional[str] = None
    text: Optional[str] = None


class SendImageBody(_Body):
    image: Optional[str] = None
    caption: Optional[str] = None


class SendVideoBody(_Body):
    video: Optional[str] = None
    caption: Optional[str] = None


class SendAudioBody(_Body):
    audio: Optional[str] = None


class SendDocumentBody(_Body):
    document: Optional[str] = None
    filename: Optional[str] = None
    fileName: Optional[str] = None
    mimetype: Optional[str] = None
    caption: Optional[str] = None


def _fail(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse({"ok": False, "success": False, "error": error, **extra}, status_code=status_code)


async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer request validation failures with the same 400 shape as a missing field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "body"
    json_log("invalid_request", level=logging.WARNING, path=request.url.path, field=where, error=first.get("msg"))
    return _fail(400, f"invalid {where}: {first.get('msg', 'malformed request')}")


def _not_ready(snap: ConnectionSnapshot) -> JSONResponse:
    return _fail(
        503,
        "WhatsApp is not ready",
        status=snap.status.value,
        isConnected=snap.is_connected,
        isReady=snap.is_ready,
    )


async def _deliver(
    manager: ConnectionManager,
    phone: str,
    content: Dict[str, Any],
    preview: str,
    content_type: str,
    label: str,
) -> JSONResponse:
    try:
        record = await manager.send(phone, content, preview, content_type=content_type)
    except NotReadyError as e:
        return _not_ready(e.snapshot)
    except InvalidRecipientError as e:
        return _fail(400, str(e))
    except Exception as e:
        json_log("send_failed", level=logging.ERROR, content_type=content_type, error=str(e))
        return _fail(500, str(e) or e.__class__.__name__)
    return JSONResponse({
        "ok": True,
        "success": True,
        "message": f"{label} sent",
        "messageId": record.id,
        "phone": format_phone(phone, manager.settings.default_country_code),
    })


def _decode(data: str):
    try:
        return decode_base64_payload(data), None
    except MediaError as e:
        return None, _fail(400, str(e))


@router.post("/send")
async def send_text(body: SendTextBody, manager: ConnectionManager = Depends(get_manager)):
    phone, message = body.recipient, body.message or body.text
    if not phone or not message:
        return _fail(400, "phone and message are required")
    snap = manager.snapshot()
    if not snap.is_ready:
        return _not_ready(snap)
    return await _deliver(manager, phone, {"text": message}, message, "text", "Message")


@router.post("/send-image")
async def send_image(body: SendImageBody, manager: ConnectionManager = Depends(get_manager)):
    phone = body.recipient
    if not phone or not body.image:
        return _fail(400, "phone and image are required")
    snap = manager.snapshot()
    if not snap.is_ready:
        return _not_ready(snap)
    data, err = _decode(body.image)
    if err is not None:
        return err
    mime, _ = split_data_url(body.image)
    content: Dict[str, Any] = {"image": data, "mimetype": mime or "image/jpeg"}
    if body.caption:
        content["caption"] = body.caption
    return await _deliver(manager, phone, content, body.caption or "[image]", "image", "Image")


@router.post("/send-video")
async def send_video(body: SendVideoBody, manager: ConnectionManager = Depends(get_manager)):
    phone = body.recipient
    if not phone or not body.video:
        return _fail(400, "phone and video are required")
    snap = manager.snapshot()
    if not snap.is_ready:
        return _not_ready(snap)
    data, err = _decode(body.video)
    if err is not None:
        return err
    mime, _ = split_data_url(body.video)
    content: Dict[str, Any] = {"video": data, "mimetype": mime or "video/mp4"}
    if body.caption:
        content["caption"] = body.caption
    return await _deliver(manager, phone, content, body.caption or "[video]", "video", "Video")


@router.post("/send-audio")
async def send_audio(body: SendAudioBody, manager: ConnectionManager = Depends(get_manager)):
    """
    Audio is always delivered as a voice note: anything that isn't OGG already is
    transcoded to OGG/Opus first.
    """
    phone = body.recipient
    if not phone or not body.audio:
        return _fail(400, "phone and audio are required")
    snap = manager.snapshot()
    if not snap.is_ready:
        return _not_ready(snap)
    data, err = _decode(body.audio)
    if err is not None:
        return err
    try:
        ogg = await to_ogg_opus(data, manager.settings.ffmpeg_path)
    except MediaError as e:
        json_log("audio_transcode_failed", level=logging.ERROR, error=str(e))
        return _fail(500, str(e))
    content = {"audio": ogg, "mimetype": OPUS_MIMETYPE, "ptt": True}
    return await _deliver(manager, phone, content, "[audio]", "audio", "Audio")


@router.post("/send-document")
async def send_document(body: SendDocumentBody, manager: ConnectionManager = Depends(get_manager)):
    phone = body.recipient
    if not phone or not body.document:
        return _fail(400, "phone and document are required")
    snap = manager.snapshot()
    if not snap.is_ready:
        return _not_ready(snap)
    data, err = _decode(body.document)
    if err is not None:
        return err
    mime, _ = split_data_url(body.document)
    filename = body.filename or body.fileName or "document"
    content: Dict[str, Any] = {
        "document": data,
        "mimetype": body.mimetype or mime or "application/octet-stream",
        "fileName": filename,
    }
    if body.caption:
        content["caption"] = body.caption
    return await _deliver(manager, phone, content, body.caption or f"[document] {filename}", "document", "Document")


@router.get("/messages")
async def list_messages(
    limit: Optional[int] = Query(default=None, ge=0),
    offset: int = Query(default=0, ge=0),
    manager: ConnectionManager = Depends(get_manager),
):
    items = manager.message_log.snapshot(limit=limit, offset=offset)
    return {
        "ok": True,
        "success": True,
        "messages": [m.to_json() for m in items],
        "count": len(items),
        "total": manager.message_log.total,
    }


@router.post("/logout")
async def logout(manager: ConnectionManager = Depends(get_manager)):
    try:
        await manager.logout()
    except Exception as e:
        return _fail(500, str(e) or e.__class__.__name__)
    return {"ok": True, "message": "Logged out, a new QR code will follow"}


@router.post("/force-reset")
async def force_reset(manager: ConnectionManager = Depends(get_manager)):
    try:
        await manager.force_reset()
    except Exception as e:
        json_log("force_reset_error", level=logging.ERROR, error=str(e))
        return _fail(500, str(e) or e.__class__.__name__)
    return {"ok": True, "message": "Reset done, a new QR code will follow"}
