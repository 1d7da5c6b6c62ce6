import io
import json
import logging
import sys
from datetime import datetime
from typing import TextIO


# Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
def _utf8_stream_for_stdout() -> TextIO:
    try:
        if hasattr(sys.stdout, "buffer"):
            return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    except Exception:
        pass
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
            return sys.stdout
    except Exception:
        pass
    return sys.stdout


# Built once: a second wrapper over the same buffer would close stdout when the first is collected
_stdout_utf8: TextIO = _utf8_stream_for_stdout()


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(_stdout_utf8)],
        force=True,  # override handlers installed by uvicorn so every line goes through the UTF-8 stream
    )


logger = logging.getLogger("wa_relay")


def json_log(event: str, level: int = logging.INFO, **kwargs):
    """
    Emit an ASCII-only JSON log line so consoles with legacy codepages don't crash
    when phone names or message previews contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.utcnow().isoformat() + "Z", "event": event, **kwargs}
    line = json.dumps(payload, ensure_ascii=True, default=str)
    logger.log(level, line)
