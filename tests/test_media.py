import asyncio
import base64

import pytest

from wa_relay import media
from wa_relay.media import (
    MediaError,
    decode_base64_payload,
    qr_data_url,
    qr_png,
    split_data_url,
    to_ogg_opus,
)


class _FakeProc:
    def __init__(self, returncode=0, out=b"OggS-transcoded", err=b""):
        self.returncode = returncode
        self._out = out
        self._err = err
        self.stdin_data = None

    async def communicate(self, data=None):
        self.stdin_data = data
        return self._out, self._err

    def kill(self):
        pass

    async def wait(self):
        return self.returncode


def test_split_data_url():
    assert split_data_url("data:image/jpeg;base64,QUJD") == ("image/jpeg", "QUJD")
    assert split_data_url("data:audio/ogg; codecs=opus;base64,QUJD") == ("audio/ogg", "QUJD")
    assert split_data_url("QUJD") == (None, "QUJD")


def test_decode_base64_payload_tolerates_prefix_padding_and_whitespace():
    assert decode_base64_payload("data:text/plain;base64,QUJD") == b"ABC"
    assert decode_base64_payload("QUJDRA") == b"ABCD"
    assert decode_base64_payload("QUJD\nREVG") == b"ABCDEF"


@pytest.mark.parametrize("bad", ["", "data:image/png;base64,", "not base64 at all!"])
def test_decode_base64_payload_rejects_garbage(bad):
    with pytest.raises(MediaError):
        decode_base64_payload(bad)


@pytest.mark.asyncio
async def test_ogg_input_is_passed_through(monkeypatch):
    async def boom(*args, **kwargs):
        raise AssertionError("ffmpeg must not run for OGG input")

    monkeypatch.setattr(media.asyncio, "create_subprocess_exec", boom)
    data = b"OggS\x00rest"
    assert await to_ogg_opus(data) is data


@pytest.mark.asyncio
async def test_transcode_pipes_through_ffmpeg(monkeypatch):
    calls = []
    proc = _FakeProc()

    async def fake_exec(*cmd, **kwargs):
        calls.append(cmd)
        return proc

    monkeypatch.setattr(media.asyncio, "create_subprocess_exec", fake_exec)
    out = await to_ogg_opus(b"ID3-mp3-bytes", ffmpeg_path="/opt/ffmpeg")
    assert out == b"OggS-transcoded"
    assert proc.stdin_data == b"ID3-mp3-bytes"
    cmd = calls[0]
    assert cmd[0] == "/opt/ffmpeg"
    assert "libopus" in cmd
    assert cmd[-1] == "pipe:1"


@pytest.mark.asyncio
async def test_transcode_failure_raises_media_error(monkeypatch):
    async def fake_exec(*cmd, **kwargs):
        return _FakeProc(returncode=1, out=b"", err=b"Invalid data found when processing input")

    monkeypatch.setattr(media.asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(MediaError, match="Invalid data"):
        await to_ogg_opus(b"garbage")


@pytest.mark.asyncio
async def test_missing_ffmpeg_raises_media_error(monkeypatch):
    async def fake_exec(*cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(media.asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(MediaError, match="ffmpeg not found"):
        await to_ogg_opus(b"garbage", ffmpeg_path="missing-ffmpeg")


@pytest.mark.asyncio
async def test_transcode_timeout(monkeypatch):
    class _SlowProc(_FakeProc):
        async def communicate(self, data=None):
            await asyncio.sleep(1)
            return b"", b""

    async def fake_exec(*cmd, **kwargs):
        return _SlowProc()

    monkeypatch.setattr(media.asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(MediaError, match="timed out"):
        await to_ogg_opus(b"garbage", timeout=0.01)


def test_qr_png_renders_png():
    png = qr_png("2@AbCdEf,ghIjK,lmNoP")
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


def test_qr_png_decodes_captured_image():
    raw = b"\x89PNG\r\n\x1a\nfake"
    url = "data:image/png;base64," + base64.b64encode(raw).decode()
    assert qr_png(url) == raw
    assert qr_data_url(url) == url


def test_qr_data_url():
    assert qr_data_url(None) is None
    url = qr_data_url("2@pairing")
    assert url.startswith("data:image/png;base64,")
    assert base64.b64decode(url.split(",", 1)[1]).startswith(b"\x89PNG")
