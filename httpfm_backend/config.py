from __future__ import annotations

import base64
import os
import secrets
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional


# Defaults; each can be overridden through the HTTPFM_* environment variables.
DEFAULT_HOST = os.environ.get("HTTPFM_HOST", "0.0.0.0")
DEFAULT_PORT = int(os.environ.get("HTTPFM_PORT", "8080"))

# Archives for multi-select downloads are written here, never inside the storage root.
DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "httpfm-cache"

# Videos larger than this get a click-to-load placeholder instead of an inline player.
VIDEO_INLINE_MAX_BYTES = int(os.environ.get("HTTPFM_VIDEO_INLINE_MAX_BYTES", str(50 * 1024 * 1024)))  # 50MB

# Cached archives older than this are purged at startup/shutdown.
ARCHIVE_TTL_HOURS = float(os.environ.get("HTTPFM_ARCHIVE_TTL_HOURS", "1"))

CHUNK_SIZE = int(os.environ.get("HTTPFM_CHUNK_SIZE", str(64 * 1024)))

AES_KEY_SIZES = (16, 24, 32)

# Requests for this path are served but never reported to the log sink.
FAVICON_PATH = "/favicon.ico"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def decode_key(raw: str) -> bytes:
    """Decode a Base64 AES key and check its length."""
    try:
        key = base64.b64decode(raw.strip(), validate=True)
    except Exception:
        raise ValueError("Encryption key must be Base64")
    if len(key) not in AES_KEY_SIZES:
        raise ValueError("Encryption key must decode to 16, 24 or 32 bytes")
    return key


def _is_within(path: Path, base: Path) -> bool:
    return path == base or base in path.parents


@dataclass(frozen=True)
class ServerConfig:
    root: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    password_protected: bool = False
    token: str = ""
    encrypted_uploads: bool = False
    encryption_key: bytes = b""
    cache_dir: Path = DEFAULT_CACHE_DIR
    video_inline_max_bytes: int = VIDEO_INLINE_MAX_BYTES
    archive_ttl_hours: float = ARCHIVE_TTL_HOURS
    chunk_size: int = CHUNK_SIZE
    log_sink: Optional[Callable[[str], None]] = field(default=None, compare=False)
    # Secrets generated here rather than supplied by the operator; announced once at startup.
    generated: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        root = Path(self.root).expanduser().resolve()
        if not root.is_dir():
            raise ValueError(f"Storage root is not a directory: {root}")
        object.__setattr__(self, "root", root)

        cache_dir = Path(self.cache_dir).expanduser().resolve()
        if _is_within(cache_dir, root):
            raise ValueError("Archive cache directory must be outside the storage root")
        object.__setattr__(self, "cache_dir", cache_dir)

        generated = list(self.generated)
        if self.password_protected and not self.token:
            object.__setattr__(self, "token", secrets.token_urlsafe(12))
            generated.append("token")
        if self.encrypted_uploads:
            if not self.encryption_key:
                object.__setattr__(self, "encryption_key", secrets.token_bytes(32))
                generated.append("key")
            elif len(self.encryption_key) not in AES_KEY_SIZES:
                raise ValueError("Encryption key must be 16, 24 or 32 bytes")
        object.__setattr__(self, "generated", tuple(generated))

    @property
    def encryption_key_b64(self) -> str:
        return base64.b64encode(self.encryption_key).decode("ascii")

    @classmethod
    def from_env(cls, log_sink: Optional[Callable[[str], None]] = None, **overrides) -> "ServerConfig":
        """Build a config from HTTPFM_* environment variables; keyword overrides win."""
        values: dict = {
            "root": Path(os.environ.get("HTTPFM_ROOT") or os.getcwd()),
            "host": DEFAULT_HOST,
            "port": DEFAULT_PORT,
            "password_protected": _env_flag("HTTPFM_PASSWORD_PROTECTED"),
            "token": os.environ.get("HTTPFM_TOKEN", ""),
            "encrypted_uploads": _env_flag("HTTPFM_ENCRYPTED_UPLOADS"),
            "cache_dir": Path(os.environ.get("HTTPFM_CACHE_DIR") or DEFAULT_CACHE_DIR),
        }
        raw_key = os.environ.get("HTTPFM_ENCRYPTION_KEY", "")
        if raw_key.strip():
            values["encryption_key"] = decode_key(raw_key)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(log_sink=log_sink, **values)
