#!/usr/bin/env python3
"""Lay the past, original and future photos onto the print strip template."""

import argparse
import os
import tempfile
from io import BytesIO
from pathlib import Path
from typing import Sequence, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError
from pydantic import BaseModel

from booth_errors import CompositionFailed

CANVAS_SIZE = (600, 1800)
CELL_SIZE = (540, 480)
SIDE_MARGIN = 30
TOP_MARGIN = 40
BOTTOM_MARGIN = 200
VERTICAL_GAP = 60
COMPOSITE_QUALITY = 90
UPLOAD_WIDTH = 1024
UPLOAD_QUALITY = 85

ImageSource = Union[bytes, str, os.PathLike]


class CompositeImage(BaseModel):
    path: Path
    width: int
    height: int


def cell_offsets() -> Tuple[Tuple[int, int], ...]:
    """Top-left corner of the past, original and future cells."""
    return tuple((SIDE_MARGIN, TOP_MARGIN + i * (CELL_SIZE[1] + VERTICAL_GAP)) for i in range(3))


def _open_rgb(source: ImageSource, label: str) -> Image.Image:
    try:
        if isinstance(source, bytes):
            image = Image.open(BytesIO(source))
        else:
            image = Image.open(source)
        image.load()
    except (OSError, UnidentifiedImageError) as exc:
        raise CompositionFailed(f"Could not read {label} image: {exc}") from exc
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def fit_cell(image: Image.Image, size: Tuple[int, int] = CELL_SIZE) -> Image.Image:
    return ImageOps.fit(image, size, method=Image.LANCZOS, centering=(0.5, 0.5))


def compose_strip(
    past: ImageSource,
    original: ImageSource,
    future: ImageSource,
    template_path: Union[str, os.PathLike],
    output_path: Union[str, os.PathLike],
) -> CompositeImage:
    """Render the three-photo strip and write it to ``output_path``.

    The file appears atomically: the JPEG is written next to the destination
    and moved into place, so a failure never leaves a partial composite.
    """
    if not os.path.exists(template_path):
        raise CompositionFailed(f"Strip template not found at {template_path}")
    background = fit_cell(_open_rgb(template_path, "template"), CANVAS_SIZE)

    cells = [
        fit_cell(_open_rgb(source, label))
        for label, source in (("past", past), ("original", original), ("future", future))
    ]
    for cell, offset in zip(cells, cell_offsets()):
        background.paste(cell, offset)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.stem}_", suffix=".jpg", dir=output_path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            background.save(handle, format="JPEG", quality=COMPOSITE_QUALITY)
        os.replace(tmp_name, output_path)
    except OSError as exc:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise CompositionFailed(f"Could not write composite to {output_path}: {exc}") from exc
    return CompositeImage(path=output_path, width=background.width, height=background.height)


def resize_for_upload(data: bytes, width: int = UPLOAD_WIDTH) -> bytes:
    """Shrink a captured photo to ``width`` pixels wide, never enlarging it."""
    image = _open_rgb(data, "captured")
    if image.width > width:
        height = max(1, round(image.height * width / image.width))
        image = image.resize((width, height), Image.LANCZOS)
    buffer = BytesIO()
    image.save(buffer, format="JPEG", quality=UPLOAD_QUALITY)
    return buffer.getvalue()


def parse_args(argv: Sequence[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compose a past/original/future photo strip.")
    parser.add_argument("--past", required=True, help="Image placed in the top cell.")
    parser.add_argument("--original", required=True, help="Image placed in the middle cell.")
    parser.add_argument("--future", required=True, help="Image placed in the bottom cell.")
    parser.add_argument("--template", default="assets/background.ppm", help="Background template image.")
    parser.add_argument("--output", default="photos/strip.jpg", help="Destination path for the composite.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] = None) -> None:
    args = parse_args(argv)
    composite = compose_strip(args.past, args.original, args.future, args.template, args.output)
    print(f"Saved {composite.width}x{composite.height} strip to {composite.path}")


if __name__ == "__main__":
    main()
