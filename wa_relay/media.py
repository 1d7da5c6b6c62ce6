import asyncio
import base64
import binascii
import io
import re
from typing import Optional, Tuple

import qrcode

from .connection import RelayError

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,", re.IGNORECASE)
PNG_DATA_URL_PREFIX = "data:image/png;base64,"
OPUS_MIMETYPE = "audio/ogg; codecs=opus"


class MediaError(RelayError):
    """Raised for undecodable payloads or a failed transcode."""
    pass


def split_data_url(data: str) -> Tuple[Optional[str], str]:
    """
    'data:image/jpeg;base64,AAAA' -> ('image/jpeg', 'AAAA'). Plain base64 -> (None, data).
    """
    s = (data or "").strip()
    m = DATA_URL_RE.match(s)
    if not m:
        return None, s
    return m.group("mime"), s[m.end():]


def decode_base64_payload(data: str) -> bytes:
    _, b64 = split_data_url(data)
    if not b64:
        raise MediaError("empty media payload")
    # tolerate missing padding and whitespace from clients that wrap base64 lines
    b64 = "".join(b64.split())
    b64 += "=" * (-len(b64) % 4)
    try:
        return base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MediaError(f"invalid base64 payload: {e}")


def is_ogg(data: bytes) -> bool:
    return data[:4] == b"OggS"


async def to_ogg_opus(data: bytes, ffmpeg_path: str = "ffmpeg", timeout: float = 60.0) -> bytes:
    """
    Transcode arbitrary audio into an OGG/Opus voice note by piping it through ffmpeg.
    Input that is already OGG is passed through untouched.
    """
    if is_ogg(data):
        return data
    cmd = [
        ffmpeg_path, "-hide_banner", "-loglevel", "error",
        "-i", "pipe:0",
        "-vn", "-ac", "1", "-ar", "48000",
        "-c:a", "libopus", "-b:a", "32k",
        "-f", "ogg", "pipe:1",
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise MediaError(f"ffmpeg not found at {ffmpeg_path!r}")
    try:
        out, err = await asyncio.wait_for(proc.communicate(data), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise MediaError("audio transcode timed out")
    if proc.returncode != 0 or not out:
        detail = (err or b"").decode("utf-8", "ignore").strip()[-300:]
        raise MediaError(f"audio transcode failed (exit {proc.returncode}): {detail}")
    return out


def qr_png(payload: str, box_size: int = 10, border: int = 4) -> bytes:
    """
    Render a pairing payload as PNG. Backends that can only capture the QR as an
    image hand over a data URL, which is decoded instead of re-encoded.
    """
    if payload.startswith("data:image"):
        return decode_base64_payload(payload)
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(payload: Optional[str]) -> Optional[str]:
    if not payload:
        return None
    if payload.startswith("data:image"):
        return payload
    return PNG_DATA_URL_PREFIX + base64.b64encode(qr_png(payload)).decode("ascii")
