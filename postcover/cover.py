#!/usr/bin/env python3
"""
Cover-image upload for the blog's post editor.

Checks a picked image, previews it, pushes it to object storage and hands
the resulting URL back to the editing form.
"""

import asyncio
import base64
import io
import mimetypes
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import boto3
import click
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, request
from werkzeug.datastructures import FileStorage
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 10 * 1024 * 1024  # 10 MiB
MULTIPART_OVERHEAD_BYTES = 64 * 1024  # boundaries + part headers
IMAGE_MIMES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
}

# upload status
IDLE = "idle"
UPLOADING = "uploading"
SUCCESS = "success"
ERROR = "error"
UPLOAD_STATUSES = (IDLE, UPLOADING, SUCCESS, ERROR)

# storage reports no real progress, so the bar is simulated
PROGRESS_STEP = 10
PROGRESS_INTERVAL = 0.2  # seconds
PROGRESS_CAP = 90
SUCCESS_RESET_DELAY = 2.0  # seconds

DEFAULT_UPLOAD_ERROR = "Upload failed."
UNKNOWN_UPLOAD_ERROR = "Something went wrong while uploading."

################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Configuration
###############################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def _env(key: str, env_file: dict[str, str] | None = None) -> str:
    if env_file is None:
        env_file = _read_env_file()
    return (os.environ.get(key) or env_file.get(key) or "").strip()


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: _env(k, env_file) for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def upload_endpoint() -> str:
    """Default target for :class:`HttpUploader` (``UPLOAD_ENDPOINT``)."""
    return _env("UPLOAD_ENDPOINT")


###############################################################################
# Files + validation
###############################################################################
@dataclass(frozen=True)
class ImageFile:
    """A picked file: name, size in bytes, MIME type and contents."""

    name: str
    size: int
    mime_type: str
    data: bytes = field(default=b"", repr=False)

    @classmethod
    def from_path(cls, path) -> "ImageFile":
        path = Path(path)
        data = path.read_bytes()
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(name=path.name, size=len(data), mime_type=mime, data=data)

    @classmethod
    def from_storage(cls, fs: FileStorage) -> "ImageFile":
        """Wrap a werkzeug upload (``request.files[...]``)."""
        fs.stream.seek(0)
        data = fs.stream.read()
        return cls(
            name=fs.filename or "",
            size=len(data),
            mime_type=(fs.mimetype or "").lower(),
            data=data,
        )

    def open(self) -> io.BytesIO:
        return io.BytesIO(self.data)


class UploadError(ValueError):
    """Anything that ends an upload attempt in the ``error`` state."""


class InvalidFileType(UploadError):
    def __init__(self, mime_type: str = ""):
        super().__init__(
            "Unsupported file type. Only JPG, PNG, GIF and WebP images can be uploaded."
        )
        self.mime_type = mime_type


class FileTooLarge(UploadError):
    def __init__(self, size: int, limit: int = UPLOAD_MAX_BYTES):
        super().__init__(
            f"File is too large. Please choose an image of {format_file_size(limit)} or less."
        )
        self.size = size
        self.limit = limit


class UploadFailed(UploadError):
    """The storage backend refused the file or could not be reached."""

    def __init__(self, message: str | None = None):
        super().__init__(message or DEFAULT_UPLOAD_ERROR)


class UnknownUploadError(UploadError):
    def __init__(self):
        super().__init__(UNKNOWN_UPLOAD_ERROR)


def format_file_size(n: int) -> str:
    """1536 → ``1.5KB``, 10 MiB → ``10MB``."""
    if n <= 0:
        return "0B"
    size = float(n)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            break
        size /= 1024
    else:
        unit = "GB"
    return f"{round(size, 2):g}{unit}"


def is_image_file(file: ImageFile) -> bool:
    return (file.mime_type or "").lower() in IMAGE_MIMES


def validate_image(file: ImageFile) -> None:
    """Raise :class:`InvalidFileType` / :class:`FileTooLarge`, else return."""
    if not is_image_file(file):
        raise InvalidFileType(file.mime_type)
    if file.size > UPLOAD_MAX_BYTES:
        raise FileTooLarge(file.size)


###############################################################################
# Preview handles
###############################################################################
class PreviewHandle:
    """
    Something the editor can put in ``<img src>``.

    • local  → ``data:`` URI built from the picked file; release() drops it
    • remote → URL of an image that already lives in storage
    """

    def __init__(self, url: str, *, local: bool):
        self.url: str | None = url
        self.local = local
        self.released = False

    @classmethod
    def for_file(cls, file: ImageFile) -> "PreviewHandle":
        encoded = base64.b64encode(file.data).decode("ascii")
        return cls(f"data:{file.mime_type};base64,{encoded}", local=True)

    @classmethod
    def for_remote(cls, url: str) -> "PreviewHandle":
        return cls(url, local=False)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        if self.local:
            self.url = None

    def __repr__(self) -> str:
        kind = "local" if self.local else "remote"
        state = " released" if self.released else ""
        return f"<PreviewHandle {kind}{state}>"


###############################################################################
# Upload widget
###############################################################################
class ProgressTicker:
    """Call *tick* every *interval* seconds until it returns False or cancel()."""

    def __init__(self, tick, *, interval: float = PROGRESS_INTERVAL):
        self.tick = tick
        self.interval = interval
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.tick():
                return

    def cancel(self) -> None:
        if self.running:
            self._task.cancel()
        self._task = None


class ImageUpload:
    """
    One cover-image slot: select → validate → preview → upload → report.

    *upload* is an awaitable callable taking an :class:`ImageFile` and
    returning ``{"success": True, "url": ...}`` or
    ``{"success": False, "error": ...}``.  All methods run on the event loop
    that owns the widget.

    Every selection and removal starts a new *generation*.  With
    ``ignore_stale`` (the default) a result arriving for an older generation
    is dropped instead of being reported to the host.
    """

    def __init__(
        self,
        upload,
        *,
        on_image_uploaded,
        on_image_removed=None,
        initial_image: str | None = None,
        on_change=None,
        ignore_stale: bool = True,
        progress_step: int = PROGRESS_STEP,
        progress_interval: float = PROGRESS_INTERVAL,
        progress_cap: int = PROGRESS_CAP,
        success_reset_delay: float = SUCCESS_RESET_DELAY,
    ):
        self._upload = upload
        self.on_image_uploaded = on_image_uploaded
        self.on_image_removed = on_image_removed
        self.on_change = on_change
        self.ignore_stale = ignore_stale
        self.progress_step = progress_step
        self.progress_interval = progress_interval
        self.progress_cap = progress_cap
        self.success_reset_delay = success_reset_delay

        self.file: ImageFile | None = None
        self.preview = PreviewHandle.for_remote(initial_image) if initial_image else None
        self.status = IDLE
        self.progress = 0
        self.error = ""
        self.failure: UploadError | None = None

        self._generation = 0
        self._ticker: ProgressTicker | None = None
        self._task: asyncio.Task | None = None
        self._reset_task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<ImageUpload {self.status} {self.progress}%>"

    # ── public API ──────────────────────────────────────────────
    def select_file(self, file: ImageFile) -> None:
        """Validate *file* and, if it passes, start uploading it right away."""
        try:
            validate_image(file)
        except UploadError as exc:
            # a rejected pick still supersedes whatever was in flight
            self._stop_timers()
            self._generation += 1
            self._fail(exc)
            return

        loop = asyncio.get_running_loop()
        self._stop_timers()
        self._generation += 1
        self.error = ""
        self.failure = None
        self.file = file
        self._set_preview(PreviewHandle.for_file(file))
        self._start_upload(loop, file, self._generation)

    def remove(self) -> None:
        """Drop the image from any state and tell the host."""
        self._stop_timers()
        self._generation += 1
        self.file = None
        self._set_preview(None)
        self.status = IDLE
        self.error = ""
        self.failure = None
        self.progress = 0
        self._changed()
        if self.on_image_removed is not None:
            self.on_image_removed()

    async def wait(self, *, settle: bool = False) -> None:
        """
        Wait for the current upload attempt to finish.  With *settle* also
        wait for the post-success reset back to ``idle``.
        """
        if self._task is not None:
            await self._task
        if settle and self._reset_task is not None:
            await self._reset_task

    def close(self) -> None:
        """Discard the widget: stop timers, release the preview, no callbacks."""
        self._stop_timers()
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._set_preview(None)
        self.file = None

    # ── internals ───────────────────────────────────────────────
    def _start_upload(self, loop, file: ImageFile, generation: int) -> None:
        self.status = UPLOADING
        self.progress = 0
        self._changed()
        app.logger.info("Uploading %s (%s)", file.name, format_file_size(file.size))

        ticker = ProgressTicker(self._tick, interval=self.progress_interval)
        self._ticker = ticker
        ticker.start()
        self._task = loop.create_task(self._run_upload(file, generation, ticker))

    def _tick(self) -> bool:
        self.progress = min(self.progress + self.progress_step, self.progress_cap)
        self._changed()
        return self.progress < self.progress_cap

    async def _run_upload(
        self, file: ImageFile, generation: int, ticker: ProgressTicker
    ) -> None:
        try:
            result = await self._upload(file)
        except Exception:
            app.logger.exception("Upload of %s raised", file.name)
            result = None
        if result is not None and not isinstance(result, dict):
            app.logger.error("Upload of %s returned %r, expected a dict", file.name, result)
            result = None

        if generation != self._generation and self.ignore_stale:
            app.logger.debug("Dropping stale upload result for %s", file.name)
            return

        # only this attempt's ticker; a newer attempt keeps its own running
        ticker.cancel()
        if self._ticker is ticker:
            self._ticker = None
        if result is None:
            self._fail(UnknownUploadError())
            return

        url = result.get("url")
        if result.get("success") and url:
            self._succeed(url)
        else:
            app.logger.warning("Upload of %s failed: %s", file.name, result.get("error"))
            self._fail(UploadFailed(result.get("error")))

    def _succeed(self, url: str) -> None:
        self.progress = 100
        self.status = SUCCESS
        self.file = None
        self._set_preview(PreviewHandle.for_remote(url))
        self._changed()
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        # the reset runs even if the host callback raises
        self._reset_task = asyncio.get_running_loop().create_task(
            self._reset_after_success()
        )
        self.on_image_uploaded(url)

    async def _reset_after_success(self) -> None:
        await asyncio.sleep(self.success_reset_delay)
        self._reset_task = None
        self.status = IDLE
        self.progress = 0
        self._changed()

    def _fail(self, exc: UploadError) -> None:
        self.status = ERROR
        self.error = str(exc)
        self.failure = exc
        self.progress = 0
        self._changed()

    def _set_preview(self, handle: PreviewHandle | None) -> None:
        if self.preview is not None and self.preview is not handle:
            self.preview.release()
        self.preview = handle

    def _stop_timers(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._reset_task is not None:
            if not self._reset_task.done():
                self._reset_task.cancel()
            self._reset_task = None

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)


class CoverForm:
    """The part of the post editor that owns the cover image reference."""

    def __init__(self, cover_image_url: str | None = None):
        self.cover_image_url = cover_image_url

    def on_image_uploaded(self, url: str) -> None:
        self.cover_image_url = url

    def on_image_removed(self) -> None:
        self.cover_image_url = None

    def widget(self, upload, **kwargs) -> ImageUpload:
        return ImageUpload(
            upload,
            on_image_uploaded=self.on_image_uploaded,
            on_image_removed=self.on_image_removed,
            initial_image=self.cover_image_url,
            **kwargs,
        )

    def payload(self) -> dict:
        return {"cover_image_url": self.cover_image_url or None}


###############################################################################
# Storage
###############################################################################
def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def object_key(filename: str) -> str:
    """``uploads/2025/06/30/<hex>.png`` – date-sharded, collision-free."""
    ext = Path(secure_filename(filename)).suffix.lower()
    return f"uploads/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"


class R2Uploader:
    """Store images in the configured R2 bucket."""

    def __init__(self, cfg: dict[str, str] | None = None):
        self.cfg = cfg or r2_config()

    def put(self, file: ImageFile) -> dict:
        key = object_key(file.name)
        try:
            client = _r2_client(self.cfg)
            client.upload_fileobj(
                file.open(),
                self.cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": file.mime_type},
            )
        except (BotoCoreError, ClientError):
            app.logger.exception("R2 upload failed")
            return {"success": False, "error": "Upload failed – check R2 credentials."}

        app.logger.info("Stored %s as %s", file.name, key)
        return {"success": True, "url": r2_object_url(self.cfg, key), "key": key}

    async def __call__(self, file: ImageFile) -> dict:
        return await asyncio.to_thread(self.put, file)


class HttpUploader:
    """POST images to an ``/upload-image`` endpoint."""

    def __init__(self, endpoint: str, *, timeout: float = 30):
        self.endpoint = endpoint
        self.timeout = timeout

    def put(self, file: ImageFile) -> dict:
        try:
            resp = requests.post(
                self.endpoint,
                files={"file": (file.name, file.open(), file.mime_type)},
                timeout=self.timeout,
            )
        except requests.RequestException:
            app.logger.exception("Upload to %s failed", self.endpoint)
            return {
                "success": False,
                "error": "Upload failed – could not reach the upload server.",
            }

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if resp.status_code == 201 and body.get("url"):
            return {"success": True, "url": body["url"], "key": body.get("key", "")}
        return {
            "success": False,
            "error": body.get("error") or f"Upload failed (HTTP {resp.status_code}).",
        }

    async def __call__(self, file: ImageFile) -> dict:
        return await asyncio.to_thread(self.put, file)


###############################################################################
# Routes
###############################################################################
@app.route("/upload-image", methods=["POST"])
def upload_image():
    cfg = r2_config()
    if not r2_is_configured(cfg):
        return {"error": "Image uploads are not configured."}, 400

    # reject before the body is parsed; the exact size is checked again below
    clen = request.content_length
    if clen and clen > UPLOAD_MAX_BYTES + MULTIPART_OVERHEAD_BYTES:
        return {"error": str(FileTooLarge(clen))}, 413

    if "file" not in request.files:
        return {"error": "No file received."}, 400

    f = request.files["file"]
    if not f.filename:
        return {"error": "No file selected."}, 400

    file = ImageFile.from_storage(f)
    try:
        validate_image(file)
    except InvalidFileType as exc:
        return {"error": str(exc)}, 415
    except FileTooLarge as exc:
        return {"error": str(exc)}, 413

    result = R2Uploader(cfg).put(file)
    if not result["success"]:
        return {"error": result["error"]}, 502
    return {"url": result["url"], "key": result["key"]}, 201


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@app.errorhandler(404)
def not_found(exc):
    return {"error": "Not found."}, 404


@app.errorhandler(405)
def method_not_allowed(exc):
    return {"error": "Method not allowed."}, 405


@app.errorhandler(500)
def internal_error(exc):
    return {"error": "Internal Server Error"}, 500


###############################################################################
# CLI – upload a file from disk
###############################################################################
def _echo_progress(widget: ImageUpload) -> None:
    if widget.status in (UPLOADING, SUCCESS):
        click.echo(f"  {widget.progress:3d}%")


async def _drive(widget: ImageUpload, file: ImageFile) -> None:
    widget.select_file(file)
    try:
        await widget.wait()
    finally:
        widget.close()


@app.cli.command("upload")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--endpoint",
    default=None,
    help="POST the file to this upload URL instead of writing to R2.",
)
def cli_upload(path: Path, endpoint: str | None):
    """Upload an image and print its public URL."""
    endpoint = endpoint or upload_endpoint()
    if endpoint:
        uploader = HttpUploader(endpoint)
    else:
        cfg = r2_config()
        if not r2_is_configured(cfg):
            raise click.ClickException("Image uploads are not configured.")
        uploader = R2Uploader(cfg)

    form = CoverForm()
    widget = form.widget(uploader, on_change=_echo_progress)
    asyncio.run(_drive(widget, ImageFile.from_path(path)))

    if form.cover_image_url is None:
        raise click.ClickException(widget.error or DEFAULT_UPLOAD_ERROR)
    click.secho("\n✅  Uploaded.", fg="green")
    click.echo(form.cover_image_url)


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
