from __future__ import annotations

import asyncio
import base64
from pathlib import Path

DATA_URI_PREFIX = "data:image/png;base64,"


class ReferenceImageMissingError(FileNotFoundError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Reference image not found at {path}")


def encode_data_uri(image_bytes: bytes) -> str:
    return DATA_URI_PREFIX + base64.b64encode(image_bytes).decode("ascii")


def load_reference_image(path: Path) -> str:
    if not path.is_file():
        raise ReferenceImageMissingError(path)
    return encode_data_uri(path.read_bytes())


async def load_reference_image_async(path: Path) -> str:
    return await asyncio.to_thread(load_reference_image, path)
