"""
tests/conftest.py
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from postcover import cover
from postcover.cover import R2_ENV_KEYS, app

MiB = 1024 * 1024
R2_ENV = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "key-id",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "covers",
    "R2_PUBLIC_BASE": "https://cdn.example.com",
}


class FakeStorage:
    """
    Stand-in for an uploader: records every file it is handed and answers
    with *result* (or raises *exc*).  With ``hold=True`` each call blocks
    until ``gate`` is set, so tests can look at the widget mid-upload.
    """

    def __init__(
        self,
        result: dict | None = None,
        *,
        exc: Exception | None = None,
        hold: bool = False,
    ):
        self.result = result or {
            "success": True,
            "url": "https://cdn/x.png",
            "key": "x.png",
        }
        self.exc = exc
        self.hold = hold
        self.gate = asyncio.Event()
        self.calls: list = []

    async def __call__(self, file):
        self.calls.append(file)
        if self.hold:
            await self.gate.wait()
        if self.exc is not None:
            raise self.exc
        return dict(self.result)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Never read the developer's real .env or R2 credentials."""
    monkeypatch.setattr(cover, "ENV_FILE", tmp_path / ".env")
    for key in (*R2_ENV_KEYS, "UPLOAD_ENDPOINT"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def r2_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    for key, value in R2_ENV.items():
        monkeypatch.setenv(key, value)
    return dict(R2_ENV)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Yields:
        `flask.testing.FlaskClient`
    """
    app.config.update(TESTING=True)
    with app.test_client() as client:
        with app.app_context():
            yield client
