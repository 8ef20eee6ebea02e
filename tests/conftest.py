"""Shared fixtures for the artrelay test suite."""

from __future__ import annotations

import io
import tempfile
from pathlib import Path
from typing import Callable, List

import pytest
from PIL import Image

from artrelay.storage.database import Database

API_BASE = "https://collectionapi.metmuseum.org/public/collection/v1"


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_image_bytes(size=(800, 600), color=(200, 30, 30), fmt="PNG") -> bytes:
    """Encode a solid-colour image."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def temp_db_path() -> str:
    """Path of a temporary SQLite file, removed afterwards."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "artrelay-test.db")


@pytest.fixture
def temp_db(temp_db_path: str) -> Database:
    return Database(temp_db_path)


@pytest.fixture
def image_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def image_loader(image_bytes: bytes) -> Callable:
    """Image loader that serves the same PNG for every URL."""
    requested: List[str] = []

    async def load(url: str) -> bytes:
        requested.append(url)
        return image_bytes

    load.requested = requested  # type: ignore[attr-defined]
    return load
