from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from .security import encode_path, normalize_relative_path


logger = logging.getLogger(__name__)

APP_TITLE = "HTTP File Manager"

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title></title>
<style>
body { font-family: sans-serif; margin: 0 auto; max-width: 960px; padding: 16px; background: #fafafa; }
h1 { font-size: 1.2em; word-break: break-all; }
ul.entries { list-style: none; padding: 0; }
li.entry { display: flex; align-items: center; gap: 10px; padding: 6px 4px; border-bottom: 1px solid #e4e4e4; }
li.entry a { flex: 1; word-break: break-all; text-decoration: none; }
li.empty { padding: 12px 4px; color: #777; }
.icon { width: 64px; text-align: center; font-size: 1.6em; }
.thumb { width: 64px; max-height: 64px; object-fit: cover; }
.video-placeholder { height: 48px; line-height: 48px; text-align: center; background: #222; color: #fff; cursor: pointer; }
.size { color: #777; font-size: 0.85em; white-space: nowrap; }
.toolbar, .upload { margin: 12px 0; display: flex; gap: 12px; align-items: center; }
a.parent { display: inline-block; margin-bottom: 8px; }
</style>
</head>
<body>
<h1 id="title"></h1>
<div id="nav"></div>
<form id="selection" method="post" action="/download-multiple">
<div class="toolbar">
<label><input type="checkbox" id="select-all"> Select all</label>
<button type="submit">Download selected</button>
</div>
<ul class="entries" id="entries"></ul>
</form>
<div id="upload"></div>
<script>
document.getElementById('select-all').addEventListener('change', function (ev) {
  document.querySelectorAll('input[name=selected]').forEach(function (box) { box.checked = ev.target.checked; });
});
document.querySelectorAll('.video-placeholder').forEach(function (el) {
  el.addEventListener('click', function () {
    var video = document.createElement('video');
    video.controls = true;
    video.className = 'thumb';
    video.src = el.dataset.src;
    el.replaceWith(video);
    video.play();
  });
});
</script>
</body>
</html>
"""

_ENCRYPTED_UPLOAD_SCRIPT = """<script>
function httpfmToBase64(bytes) {
  var out = '';
  for (var i = 0; i < bytes.length; i += 0x8000) {
    out += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
  }
  return btoa(out);
}
document.getElementById('encrypted-upload').addEventListener('submit', async function (ev) {
  ev.preventDefault();
  var form = ev.target;
  var raw = Uint8Array.from(atob(form.dataset.key), function (c) { return c.charCodeAt(0); });
  var key = await crypto.subtle.importKey('raw', raw, {name: 'AES-CBC'}, false, ['encrypt']);
  var files = form.querySelector('input[type=file]').files;
  for (var i = 0; i < files.length; i++) {
    var content = new Uint8Array(await files[i].arrayBuffer());
    var plain = JSON.stringify({filename: files[i].name, directory: form.dataset.path, data: httpfmToBase64(content)});
    var iv = crypto.getRandomValues(new Uint8Array(16));
    var cipher = await crypto.subtle.encrypt({name: 'AES-CBC', iv: iv}, key, new TextEncoder().encode(plain));
    var resp = await fetch('/upload', {
      method: 'POST',
      headers: {'Content-Type': 'application/json'},
      body: JSON.stringify({iv: httpfmToBase64(iv), data: httpfmToBase64(new Uint8Array(cipher))})
    });
    if (!resp.ok) { alert(await resp.text()); return; }
  }
  location.reload();
});
</script>
"""

_LOGIN_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title></title>
<style>
body { font-family: sans-serif; display: flex; justify-content: center; padding-top: 15vh; background: #fafafa; }
form { display: flex; flex-direction: column; gap: 10px; min-width: 260px; }
.error { color: #b00020; }
</style>
</head>
<body>
<form id="login" method="get">
<h1 id="title"></h1>
<input type="password" name="token" placeholder="Access token" autofocus>
<button type="submit">Unlock</button>
</form>
</body>
</html>
"""


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    is_dir: bool
    size: int
    mime_type: Optional[str]
    relative_path: str


def guess_mime_type(name: str) -> Optional[str]:
    mime, _ = mimetypes.guess_type(name)
    return mime


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def child_path(relative: str, name: str) -> str:
    rel = normalize_relative_path(relative)
    return f"{rel}/{name}" if rel else name


def parent_path(relative: str) -> Optional[str]:
    """Relative path of the parent directory, or None at the storage root."""
    rel = normalize_relative_path(relative)
    if not rel:
        return None
    return rel.rsplit("/", 1)[0] if "/" in rel else ""


def browse_url(relative: str) -> str:
    encoded = encode_path(relative)
    return f"/browse/{encoded}" if encoded else "/"


def scan_directory(directory: Path, relative: str) -> list[DirectoryEntry]:
    """List a directory, directories first then case-insensitive name order.

    Raises OSError when the directory itself cannot be read; children that
    vanish or cannot be stat'ed mid-scan are skipped.
    """
    entries: list[DirectoryEntry] = []
    with os.scandir(directory) as it:
        for item in it:
            try:
                is_dir = item.is_dir()
                size = 0 if is_dir else item.stat().st_size
            except OSError as e:
                logger.warning("Could not access %s: %s", item.path, e)
                continue
            entries.append(
                DirectoryEntry(
                    name=item.name,
                    is_dir=is_dir,
                    size=size,
                    mime_type=None if is_dir else guess_mime_type(item.name),
                    relative_path=child_path(relative, item.name),
                )
            )
    entries.sort(key=lambda e: (not e.is_dir, e.name.lower()))
    return entries


def preview_kind(entry: DirectoryEntry, video_inline_max_bytes: int) -> str:
    mime = entry.mime_type or ""
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video" if entry.size <= video_inline_max_bytes else "video-placeholder"
    if mime.startswith("audio/"):
        return "audio"
    return "icon"


def _icon(soup: BeautifulSoup, glyph: str) -> Tag:
    span = soup.new_tag("span")
    span["class"] = ["icon"]
    span.string = glyph
    return span


def _preview_tag(soup: BeautifulSoup, entry: DirectoryEntry, video_inline_max_bytes: int) -> Tag:
    src = f"/preview/{encode_path(entry.relative_path)}"
    kind = preview_kind(entry, video_inline_max_bytes)
    if kind == "image":
        tag = soup.new_tag("img", src=src, alt=entry.name, loading="lazy")
    elif kind == "video":
        tag = soup.new_tag("video", src=src, controls="", preload="metadata")
    elif kind == "video-placeholder":
        # Large videos are only fetched once the user asks for them.
        tag = soup.new_tag("div", title="Click to load video")
        tag["data-src"] = src
        tag["class"] = ["thumb", "video-placeholder"]
        tag.string = "▶"
        return tag
    elif kind == "audio":
        tag = soup.new_tag("audio", src=src, controls="", preload="none")
        tag["class"] = ["audio"]
        return tag
    else:
        return _icon(soup, "\U0001f4c4")
    tag["class"] = ["thumb"]
    return tag


def _entry_item(soup: BeautifulSoup, entry: DirectoryEntry, video_inline_max_bytes: int) -> Tag:
    li = soup.new_tag("li")
    link = soup.new_tag("a")
    if entry.is_dir:
        li["class"] = ["entry", "dir"]
        li.append(_icon(soup, "\U0001f4c1"))
        link["href"] = browse_url(entry.relative_path)
        link.string = f"{entry.name}/"
        li.append(link)
        return li

    li["class"] = ["entry", "file"]
    li.append(soup.new_tag("input", attrs={"type": "checkbox", "name": "selected", "value": entry.relative_path}))
    li.append(_preview_tag(soup, entry, video_inline_max_bytes))
    link["href"] = f"/download/{encode_path(entry.relative_path)}"
    link.string = entry.name
    li.append(link)
    size = soup.new_tag("span")
    size["class"] = ["size"]
    size.string = format_size(entry.size)
    li.append(size)
    return li


def _upload_form(soup: BeautifulSoup, relative: str, encryption_key_b64: Optional[str]) -> list[Tag]:
    form = soup.new_tag("form")
    form["class"] = ["upload"]
    file_input = soup.new_tag("input", attrs={"type": "file", "name": "file", "multiple": ""})
    button = soup.new_tag("button", attrs={"type": "submit"})
    button.string = "Upload"
    if encryption_key_b64 is None:
        form["method"] = "post"
        form["action"] = "/upload"
        form["enctype"] = "multipart/form-data"
        form.append(soup.new_tag("input", attrs={"type": "hidden", "name": "path", "value": relative}))
        form.append(file_input)
        form.append(button)
        return [form]

    form["id"] = "encrypted-upload"
    form["data-key"] = encryption_key_b64
    form["data-path"] = relative
    form.append(file_input)
    form.append(button)
    script = BeautifulSoup(_ENCRYPTED_UPLOAD_SCRIPT, "html.parser").find("script")
    return [form, script.extract()]


def render_listing(
    entries: list[DirectoryEntry],
    relative: str,
    video_inline_max_bytes: int,
    encryption_key_b64: Optional[str] = None,
) -> str:
    """Render the HTML listing for one directory.

    encryption_key_b64 switches the upload form to the client-side encrypted
    envelope; leave it None for plain multipart uploads.
    """
    rel = normalize_relative_path(relative)
    soup = BeautifulSoup(_PAGE_TEMPLATE, "html.parser")
    soup.title.string = f"{APP_TITLE} - /{rel}"
    soup.find(id="title").string = f"/{rel}"

    parent = parent_path(rel)
    if parent is not None:
        up = soup.new_tag("a", href=browse_url(parent))
        up["class"] = ["parent"]
        up.string = "⬆ Parent directory"
        soup.find(id="nav").append(up)

    container = soup.find(id="entries")
    if not entries:
        empty = soup.new_tag("li")
        empty["class"] = ["empty"]
        empty.string = "No files found"
        container.append(empty)
    for entry in entries:
        container.append(_entry_item(soup, entry, video_inline_max_bytes))

    upload = soup.find(id="upload")
    for tag in _upload_form(soup, rel, encryption_key_b64):
        upload.append(tag)
    return str(soup)


def render_login_page(rejected: bool = False) -> str:
    soup = BeautifulSoup(_LOGIN_TEMPLATE, "html.parser")
    soup.title.string = APP_TITLE
    soup.find(id="title").string = APP_TITLE
    if rejected:
        note = soup.new_tag("p")
        note["class"] = ["error"]
        note.string = "Invalid token"
        soup.find(id="login").append(note)
    return str(soup)
