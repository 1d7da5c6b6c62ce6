import json
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

CREDS_FILE = "creds.json"
PROFILE_DIR = "browser_profile"


class SessionStore:
    """
    On-disk authentication material for the single WhatsApp session.

    The directory contents are owned by the socket backend; this class only answers
    "do credentials exist" and wipes everything when a session is invalidated.
    """

    def __init__(self, auth_dir: Path, media_dir: Optional[Path] = None):
        self.auth_dir = Path(auth_dir)
        self.media_dir = Path(media_dir) if media_dir else self.auth_dir.parent / "media"

    @property
    def creds_path(self) -> Path:
        return self.auth_dir / CREDS_FILE

    @property
    def profile_dir(self) -> Path:
        return self.auth_dir / PROFILE_DIR

    def ensure_layout(self):
        for p in [self.auth_dir, self.media_dir]:
            p.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        try:
            return self.creds_path.is_file()
        except OSError:
            return False

    def clear(self):
        shutil.rmtree(self.auth_dir, ignore_errors=True)
        self.auth_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.exists():
            return None
        try:
            return json.loads(self.creds_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def persist(self, creds: Dict[str, Any]):
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        data = dict(creds or {})
        data.setdefault("saved_at", datetime.utcnow().isoformat() + "Z")
        # write to tmp then move so a crash never leaves a half-written marker behind
        tmp = self.auth_dir / f".{CREDS_FILE}.tmp"
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.creds_path)

    def spool_media(self, data: bytes, suffix: str = ".bin") -> Path:
        """
        Write outbound media to a uniquely named file for backends that upload from disk.
        Caller removes it once the send completes.
        """
        self.media_dir.mkdir(parents=True, exist_ok=True)
        target = self.media_dir / f"{datetime.utcnow().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}{suffix}"
        target.write_bytes(data)
        return target
