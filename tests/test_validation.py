"""
tests/test_validation.py
"""
import io

import pytest
from werkzeug.datastructures import FileStorage

from conftest import MiB
from postcover.cover import (
    UPLOAD_MAX_BYTES,
    FileTooLarge,
    ImageFile,
    InvalidFileType,
    PreviewHandle,
    format_file_size,
    is_image_file,
    validate_image,
)


# ──────────────────────────────────────────────────────────────
# human-readable sizes
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("n, expected", [
    (0,               "0B"),
    (512,             "512B"),
    (1536,            "1.5KB"),
    (10 * MiB,        "10MB"),
    (int(2.25 * MiB), "2.25MB"),
    (3 * 1024 * MiB,  "3GB"),
])
def test_format_file_size(n, expected):
    assert format_file_size(n) == expected


# ──────────────────────────────────────────────────────────────
# type + size predicates
# ──────────────────────────────────────────────────────────────
@pytest.mark.parametrize("mime, ok", [
    ("image/png",       True),
    ("image/jpeg",      True),
    ("IMAGE/GIF",       True),      # case-insensitive
    ("image/webp",      True),
    ("image/svg+xml",   False),     # raster formats only
    ("application/pdf", False),
    ("",                False),
])
def test_is_image_file(mime, ok):
    assert is_image_file(ImageFile("f", 10, mime)) is ok


def test_validate_rejects_wrong_type():
    with pytest.raises(InvalidFileType) as exc:
        validate_image(ImageFile("notes.txt", 10, "text/plain"))
    assert "JPG, PNG, GIF and WebP" in str(exc.value)
    assert exc.value.mime_type == "text/plain"


def test_validate_rejects_oversized_file():
    with pytest.raises(FileTooLarge) as exc:
        validate_image(ImageFile("big.jpg", 15 * MiB, "image/jpeg"))
    assert "10MB" in str(exc.value)


def test_validate_accepts_limit_exactly():
    validate_image(ImageFile("edge.png", UPLOAD_MAX_BYTES, "image/png"))


def test_type_is_checked_before_size():
    # both wrong → the type message wins
    with pytest.raises(InvalidFileType):
        validate_image(ImageFile("huge.bmp", 50 * MiB, "image/bmp"))


# ──────────────────────────────────────────────────────────────
# building files
# ──────────────────────────────────────────────────────────────
def test_image_file_from_path(tmp_path):
    p = tmp_path / "cover.png"
    p.write_bytes(b"\x89PNG....")
    f = ImageFile.from_path(p)
    assert f.name == "cover.png"
    assert f.size == 8
    assert f.mime_type == "image/png"
    assert f.open().read() == b"\x89PNG...."


def test_image_file_from_path_unknown_extension(tmp_path):
    p = tmp_path / "blob.zzz-unknown"
    p.write_bytes(b"x")
    assert ImageFile.from_path(p).mime_type == "application/octet-stream"


def test_image_file_from_storage():
    fs = FileStorage(
        stream=io.BytesIO(b"GIF89a"),
        filename="anim.gif",
        content_type="IMAGE/GIF",
    )
    f = ImageFile.from_storage(fs)
    assert (f.name, f.size, f.mime_type) == ("anim.gif", 6, "image/gif")


# ──────────────────────────────────────────────────────────────
# preview handles
# ──────────────────────────────────────────────────────────────
def test_local_preview_is_data_uri_and_release_drops_it():
    h = PreviewHandle.for_file(ImageFile("a.png", 3, "image/png", b"abc"))
    assert h.url == "data:image/png;base64,YWJj"
    assert h.local and not h.released

    h.release()
    assert h.released and h.url is None
    h.release()                       # idempotent
    assert "released" in repr(h)


def test_remote_preview_keeps_url_after_release():
    h = PreviewHandle.for_remote("https://cdn/old.png")
    h.release()
    assert h.released
    assert h.url == "https://cdn/old.png"
