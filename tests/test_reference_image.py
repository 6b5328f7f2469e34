from __future__ import annotations

import base64
from pathlib import Path

import pytest

from banana_proxy.reference_image import (
    ReferenceImageMissingError,
    load_reference_image,
    load_reference_image_async,
)


def test_encodes_file_as_png_data_uri(tmp_path: Path) -> None:
    path = tmp_path / "reference.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\nabc")

    data_uri = load_reference_image(path)

    assert data_uri.startswith("data:image/png;base64,")
    assert base64.b64decode(data_uri.split(",", 1)[1]) == b"\x89PNG\r\n\x1a\nabc"
    assert load_reference_image(path) == data_uri


def test_missing_file_raises(tmp_path: Path) -> None:
    missing = tmp_path / "nope.png"

    with pytest.raises(ReferenceImageMissingError) as exc_info:
        load_reference_image(missing)

    assert isinstance(exc_info.value, FileNotFoundError)
    assert exc_info.value.path == missing


def test_directory_is_not_an_image(tmp_path: Path) -> None:
    with pytest.raises(ReferenceImageMissingError):
        load_reference_image(tmp_path)


@pytest.mark.asyncio
async def test_async_loader_matches_sync(tmp_path: Path) -> None:
    path = tmp_path / "reference.png"
    path.write_bytes(b"png-bytes")

    assert await load_reference_image_async(path) == load_reference_image(path)
