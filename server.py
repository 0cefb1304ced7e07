from __future__ import annotations

import argparse
import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, PlainTextResponse, RedirectResponse, Response
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from httpfm_backend.config import ServerConfig, decode_key
from httpfm_backend.listing import browse_url, guess_mime_type, render_listing, render_login_page, scan_directory
from httpfm_backend.logsink import RequestLog
from httpfm_backend.security import decode_path_segment, normalize_relative_path, resolve_directory, resolve_file
from httpfm_backend.sessions import SessionGate, SessionStore
from httpfm_backend.uploads import UploadError, save_encrypted_upload, save_stream, target_directory
from httpfm_backend.zip_utils import build_selection_zip, plan_selection, purge_archive_cache


logger = logging.getLogger(__name__)


def attachment_header(filename: str) -> str:
    """Content-Disposition value for a download of filename."""
    try:
        filename.encode("ascii")
        return 'attachment; filename="{}"'.format(filename.replace("\\", "\\\\").replace('"', '\\"'))
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_").replace('"', "_")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _config(request: Request) -> ServerConfig:
    return request.app.state.config


def _log(request: Request) -> RequestLog:
    return request.app.state.log


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _loggable_uri(request: Request) -> str:
    uri = request.url.path
    if request.url.query:
        # Never echo the access token into the host's log console.
        items = [(k, "***" if k == "token" else v) for k, v in request.query_params.multi_items()]
        uri += "?" + urlencode(items)
    return uri


def _path_argument(request: Request, prefix: str, decoded: str) -> str:
    """Relative path for a /prefix/<path> route, decoded once from the raw URL.

    Falls back to the router's own decoding when the server gives no raw_path.
    """
    raw = request.scope.get("raw_path")
    if raw and raw.startswith(prefix.encode("ascii")):
        return decode_path_segment(raw[len(prefix):])
    return decoded


def _file_response(path: Path, config: ServerConfig, attachment: bool) -> FileResponse:
    headers = {"Content-Disposition": attachment_header(path.name)} if attachment else None
    response = FileResponse(
        path,
        media_type=guess_mime_type(path.name) or "application/octet-stream",
        headers=headers,
    )
    response.chunk_size = config.chunk_size
    return response


def _listing(request: Request, directory: Path, relative: str) -> HTMLResponse:
    config = _config(request)
    try:
        entries = scan_directory(directory, relative)
    except OSError as e:
        # Unreadable or deleted mid-request: show an empty listing instead of failing.
        _log(request).error(f"Could not list /{relative}: {e}")
        entries = []
    html = render_listing(
        entries,
        relative,
        config.video_inline_max_bytes,
        encryption_key_b64=config.encryption_key_b64 if config.encrypted_uploads else None,
    )
    return HTMLResponse(html, headers={"Cache-Control": "no-store"})


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def list_root(request: Request) -> HTMLResponse:
    return _listing(request, _config(request).root, "")


def browse(request: Request, rel_path: str) -> HTMLResponse:
    config = _config(request)
    try:
        rel_path = _path_argument(request, "/browse/", rel_path)
        directory = resolve_directory(config.root, rel_path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Directory not found")
    return _listing(request, directory, normalize_relative_path(rel_path))


def download(request: Request, rel_path: str) -> FileResponse:
    config = _config(request)
    try:
        rel_path = _path_argument(request, "/download/", rel_path)
        path = resolve_file(config.root, rel_path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    return _file_response(path, config, attachment=True)


def preview(request: Request, rel_path: str) -> FileResponse:
    config = _config(request)
    try:
        rel_path = _path_argument(request, "/preview/", rel_path)
        path = resolve_file(config.root, rel_path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    return _file_response(path, config, attachment=False)


async def download_multiple(request: Request) -> Response:
    """Stream one selected file as-is, or a ZIP of everything selected."""
    config = _config(request)
    form = await request.form()
    selection = [value for value in form.getlist("selected") if isinstance(value, str)]
    try:
        plan = plan_selection(config.root, selection)
    except ValueError:
        raise HTTPException(status_code=400, detail="No files selected")
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")

    if plan.single_file is not None:
        return _file_response(plan.single_file, config, attachment=True)

    archive = await asyncio.to_thread(build_selection_zip, config.root, selection, config.cache_dir)
    response = FileResponse(
        archive,
        media_type="application/zip",
        headers={"Content-Disposition": attachment_header(plan.download_name)},
    )
    response.chunk_size = config.chunk_size
    return response


def _save_parts(config: ServerConfig, relative: str, parts: list[UploadFile], log: RequestLog) -> list[Path]:
    directory = target_directory(config.root, relative)
    saved: list[Path] = []
    for part in parts:
        try:
            saved.append(save_stream(directory, part.filename, part.file, config.chunk_size))
        except (UploadError, OSError) as e:
            log.error(f"Skipping upload part {part.filename!r}: {e}")
    return saved


async def upload(request: Request) -> Response:
    config = _config(request)
    log = _log(request)

    if config.encrypted_uploads:
        body = await request.body()
        if not body:
            raise HTTPException(status_code=400, detail="No POST payload")
        try:
            dest = await asyncio.to_thread(save_encrypted_upload, config.root, body, config.encryption_key)
        except UploadError as e:
            log.error(f"Upload failed: {e}")
            return PlainTextResponse(f"Upload failed: {e}", status_code=500)
        log.emit(f"Uploaded {dest.relative_to(config.root).as_posix()}")
        return PlainTextResponse(f"File uploaded: {dest.name}")

    form = await request.form()
    relative = normalize_relative_path(str(form.get("path") or ""))
    parts = [
        value
        for key, value in form.multi_items()
        if key.startswith("file") and isinstance(value, UploadFile) and value.filename
    ]
    if not parts:
        raise HTTPException(status_code=400, detail="No files uploaded")

    try:
        saved = await asyncio.to_thread(_save_parts, config, relative, parts, log)
    except UploadError as e:
        log.error(f"Upload failed: {e}")
        return PlainTextResponse(f"Upload failed: {e}", status_code=500)
    if not saved:
        return PlainTextResponse("Upload failed: no file could be stored", status_code=500)
    for path in saved:
        log.emit(f"Uploaded {path.relative_to(config.root).as_posix()}")
    return RedirectResponse(browse_url(relative), status_code=303)


# Evaluated top to bottom; the first matching (method, path) wins and
# anything unmatched falls through to 404.
ROUTES: list[tuple[str, str, Callable]] = [
    ("GET", "/", list_root),
    ("GET", "/browse/{rel_path:path}", browse),
    ("GET", "/download/{rel_path:path}", download),
    ("GET", "/preview/{rel_path:path}", preview),
    ("POST", "/download-multiple", download_multiple),
    ("POST", "/upload", upload),
]


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


async def _plain_http_error(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
    # Every route mismatch, including a wrong method on a known path, is a 404.
    if exc.status_code == 405:
        return PlainTextResponse("Not Found", status_code=404)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=getattr(exc, "headers", None))


def create_app(config: ServerConfig, store: Optional[SessionStore] = None) -> FastAPI:
    log = RequestLog(config.log_sink)
    gate = SessionGate(config.token, store if store is not None else SessionStore(), enabled=config.password_protected)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Archives are left behind for the client to finish downloading; sweep old ones.
        try:
            purge_archive_cache(config.cache_dir, config.archive_ttl_hours)
        except OSError:
            logger.exception("Archive cache purge failed")
        yield
        try:
            purge_archive_cache(config.cache_dir, config.archive_ttl_hours)
        except OSError:
            logger.exception("Archive cache purge failed")

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config = config
    app.state.log = log
    app.state.gate = gate

    @app.middleware("http")
    async def _session_gate(request: Request, call_next):
        client = _client_id(request)
        log.request(client, request.method, _loggable_uri(request))

        if gate.enabled and client not in gate.store:
            token = request.query_params.get("token")
            if not gate.check(client, token):
                return HTMLResponse(render_login_page(rejected=token is not None), headers={"Cache-Control": "no-store"})
            log.emit(f"{client} authorized")

        try:
            return await call_next(request)
        except Exception as e:
            logger.exception("Unhandled error for %s %s", request.method, request.url.path)
            log.error(f"{request.method} {request.url.path}: {e}")
            return PlainTextResponse(f"Internal server error: {e}", status_code=500)

    for method, path, endpoint in ROUTES:
        app.add_api_route(path, endpoint, methods=[method])
    app.add_exception_handler(StarletteHTTPException, _plain_http_error)

    log.emit(f"Serving {config.root}")
    log.emit(f"Password protection {'enabled' if config.password_protected else 'disabled'}")
    if "token" in config.generated:
        log.emit(f"Generated access token: {config.token}")
    if config.encrypted_uploads:
        log.emit("Encrypted uploads enabled")
        if "key" in config.generated:
            log.emit(f"Generated encryption key: {config.encryption_key_b64}")
    return app


class FileServer:
    """Start/stop wrapper that binds the port on a background uvicorn thread."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.log = RequestLog(config.log_sink)
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 10.0) -> None:
        if self.is_running:
            raise RuntimeError("Server already running")
        uv_config = uvicorn.Config(
            create_app(self.config),
            host=self.config.host,
            port=self.config.port,
            log_level="warning",
            access_log=False,
        )
        server = uvicorn.Server(uv_config)
        thread = threading.Thread(target=server.run, name="httpfm-server", daemon=True)
        thread.start()

        deadline = time.monotonic() + timeout
        while not server.started:
            if not thread.is_alive() or time.monotonic() > deadline:
                server.should_exit = True
                thread.join(timeout=1.0)
                self.log.error(f"Server failed to start on port {self.config.port}")
                raise RuntimeError(f"Could not bind {self.config.host}:{self.config.port}")
            time.sleep(0.05)

        self._server = server
        self._thread = thread
        self.log.emit(f"Server started on port {self.config.port}")

    def stop(self) -> None:
        if self._server is None or self._thread is None:
            return
        self._server.should_exit = True
        self._thread.join()
        self._server = None
        self._thread = None
        self.log.emit("Server stopped")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Share a directory over HTTP")
    parser.add_argument("--root", type=Path, help="Directory to expose (default: HTTPFM_ROOT or cwd)")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Listening port")
    parser.add_argument("--password", dest="password_protected", action="store_true", default=None,
                        help="Require the access token before serving anything")
    parser.add_argument("--token", help="Access token (generated when omitted)")
    parser.add_argument("--encrypted-uploads", action="store_true", default=None,
                        help="Only accept AES-CBC encrypted upload envelopes")
    parser.add_argument("--key", help="Base64 AES key for encrypted uploads (generated when omitted)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = _build_parser().parse_args(argv)
    overrides = {
        "root": args.root,
        "host": args.host,
        "port": args.port,
        "password_protected": args.password_protected,
        "token": args.token,
        "encrypted_uploads": args.encrypted_uploads,
        "encryption_key": decode_key(args.key) if args.key else None,
    }
    server = FileServer(ServerConfig.from_env(log_sink=print, **overrides))
    server.start()
    try:
        while server.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
