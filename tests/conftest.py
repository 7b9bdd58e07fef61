from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple

import pytest
from PIL import Image

from booth_errors import EditFailed
from booth_settings import BoothSettings
from style_editor import EditResult


def jpeg_bytes(size: Tuple[int, int] = (320, 240), color=(200, 40, 40)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def write_image(path: Path, size: Tuple[int, int], color=(200, 40, 40)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format="JPEG", quality=95)
    return path


class FakeEditor:
    """In-memory stand-in for StyleEditor.

    ``fail_on_edit`` makes the n-th edit call (1-based) fail the way an
    empty service response does.
    """

    def __init__(self, *, fail_on_edit: Optional[int] = None, size=(320, 240), color=(40, 40, 200)):
        self.fail_on_edit = fail_on_edit
        self.size = size
        self.color = color
        self.edit_calls = []
        self.uploads = []
        self.fetches = []

    async def upload(self, data: bytes, name: str) -> str:
        self.uploads.append(name)
        return f"mem://{name}"

    async def edit(self, source_ref: str, prompt: str) -> EditResult:
        self.edit_calls.append((source_ref, prompt))
        if self.fail_on_edit == len(self.edit_calls):
            raise EditFailed("Edit service returned no image.", prompt=prompt, detail={"images": []})
        return EditResult(image_ref=f"mem://edit{len(self.edit_calls)}", prompt=prompt)

    async def fetch(self, image_ref: str) -> bytes:
        self.fetches.append(image_ref)
        return jpeg_bytes(self.size, self.color)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def template_path(tmp_path) -> Path:
    return write_image(tmp_path / "assets" / "background.jpg", (300, 900), (240, 230, 210))


@pytest.fixture
def settings(tmp_path, template_path) -> BoothSettings:
    return BoothSettings(
        fal_key="test-key",
        fal_base_url="https://edit.test",
        upload_dir=tmp_path / "uploads",
        photo_dir=tmp_path / "photos",
        template_path=template_path,
        service_log=tmp_path / "logs" / "photobooth.log",
        ffmpeg_binary="ffmpeg",
        removal_passes=2,
        pass_delay_seconds=0,
        edit_timeout_seconds=5,
        pass_timeout_seconds=5,
    )
