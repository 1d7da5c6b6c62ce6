import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

MIN_LOG_CAPACITY = 100
MAX_LOG_CAPACITY = 500


def _get_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    try:
        return int(val)
    except ValueError:
        return default


@dataclass
class Settings:
    data_folder: Path = Path("./data")
    self_url: Optional[str] = None
    keepalive_interval_ms: int = 240000
    reconnect_base_ms: int = 5000
    reconnect_cap_ms: int = 30000
    fatal_reconnect_delay_ms: int = 2000
    force_reset_delay_ms: int = 1000
    max_qr_attempts: int = 5
    ready_timeout_ms: int = 10000
    message_log_capacity: int = 200
    default_country_code: str = "55"
    ffmpeg_path: str = "ffmpeg"
    run_headless: bool = True
    api_token: str = ""  # if non-empty, required as X-Token header (or ?token=) on control endpoints

    def __post_init__(self):
        self.data_folder = Path(self.data_folder)
        self.message_log_capacity = max(MIN_LOG_CAPACITY, min(MAX_LOG_CAPACITY, int(self.message_log_capacity)))

    @property
    def auth_folder(self) -> Path:
        return self.data_folder / "auth_info"

    @property
    def media_folder(self) -> Path:
        return self.data_folder / "media"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_folder=Path(os.getenv("DATA_FOLDER", "./data")),
            self_url=(os.getenv("SELF_URL") or os.getenv("RENDER_EXTERNAL_URL") or None),
            keepalive_interval_ms=_get_int("KEEPALIVE_INTERVAL", 240000),
            reconnect_base_ms=_get_int("RECONNECT_BASE_MS", 5000),
            reconnect_cap_ms=_get_int("RECONNECT_CAP_MS", 30000),
            fatal_reconnect_delay_ms=_get_int("FATAL_RECONNECT_MS", 2000),
            force_reset_delay_ms=_get_int("FORCE_RESET_DELAY_MS", 1000),
            max_qr_attempts=_get_int("MAX_QR_ATTEMPTS", 5),
            ready_timeout_ms=_get_int("READY_TIMEOUT_MS", 10000),
            message_log_capacity=_get_int("MESSAGE_LOG_CAPACITY", 200),
            default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "55"),
            ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
            run_headless=_get_bool("RUN_HEADLESS", True),
            api_token=os.getenv("API_TOKEN", ""),
        )

    def to_json(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["data_folder"] = str(self.data_folder)
        # Do not expose the token back to clients
        d["api_token"] = "(set)" if self.api_token else ""
        return d
