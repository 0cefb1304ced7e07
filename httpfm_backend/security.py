from __future__ import annotations

from pathlib import Path
from urllib.parse import quote, unquote_to_bytes


def decode_path_segment(raw: bytes | str) -> str:
    """Percent-decode a raw URL path tail exactly once.

    '+' stays a literal plus; only %XX escapes are decoded. Undecodable
    input is reported as a missing path.
    """
    try:
        return unquote_to_bytes(raw).decode("utf-8")
    except UnicodeDecodeError:
        raise FileNotFoundError("Invalid path encoding")


def normalize_relative_path(relative: str) -> str:
    """Turn a client path into a clean '/'-separated relative form.

    Expects an already decoded value (see decode_path_segment); form values
    arrive decoded by the form parser.
    """
    if not isinstance(relative, str):
        raise FileNotFoundError("Invalid path")
    text = relative.replace("\\", "/")
    parts = [p for p in text.split("/") if p not in ("", ".")]
    return "/".join(parts)


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    Escapes, symlink loops and names the filesystem refuses are all reported
    as FileNotFoundError so callers answer them exactly like a missing file.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    try:
        resolved = candidate.resolve()
    except (OSError, RuntimeError) as e:
        raise FileNotFoundError(f"Unresolvable path: {e}")
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise FileNotFoundError("Path traversal attempt")
    return resolved


def resolve_path(root: Path, relative: str, must_exist: bool = True) -> Path:
    """Map a client-supplied relative path to an absolute path under root."""
    rel = normalize_relative_path(relative)
    if "\x00" in rel:
        raise FileNotFoundError("Invalid path")
    path = safe_join(root, rel) if rel else root.resolve()
    if not must_exist:
        return path
    try:
        exists = path.exists()
    except OSError as e:
        raise FileNotFoundError(f"{rel}: {e}")
    if not exists:
        raise FileNotFoundError(rel)
    return path


def resolve_file(root: Path, relative: str) -> Path:
    path = resolve_path(root, relative)
    if not path.is_file():
        raise FileNotFoundError(relative)
    return path


def resolve_directory(root: Path, relative: str) -> Path:
    path = resolve_path(root, relative)
    if not path.is_dir():
        raise FileNotFoundError(relative)
    return path


def encode_path(relative: str) -> str:
    """Percent-encode a relative path as one URL segment ('/' included).

    Inverse of the single decode applied to incoming paths, so links built
    with it reach the same node for any Unicode name, '+', '%' or space.
    """
    if relative in ("", "."):
        return ""
    return quote(relative, safe="")


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in (".", ".."):
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name or "\x00" in name:
        return False
    return True
