"""Bring every animation frame to the size of frame 0.

ffmpeg's crossfade needs inputs of identical dimensions. Frame 0 is the
composite strip, so its natural size wins and the removal outputs are
cropped to fill it. Normalized frames are temporaries: they live in a
private work directory and are deleted once the animation is rendered.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Sequence, Tuple

from PIL import Image, ImageOps
from pydantic import BaseModel, Field

logger = logging.getLogger("photobooth.frame_normalizer")

NORMALIZED_QUALITY = 90


class Frame(BaseModel):
    ordinal: int = Field(..., ge=0)
    path: Path


class NormalizedFrame(Frame):
    width: int
    height: int


def frame_size(path: Path) -> Tuple[int, int]:
    with Image.open(path) as image:
        return image.size


def _normalized_name(path: Path) -> str:
    stem = path.stem
    if stem.endswith("_norm"):
        stem = stem[: -len("_norm")]
    return f"{stem}_norm{path.suffix or '.jpg'}"


def normalize_frames(frames: Sequence[Frame], work_dir: Path) -> List[NormalizedFrame]:
    if not frames:
        raise ValueError("At least one frame is required.")
    ordered = sorted(frames, key=lambda frame: frame.ordinal)
    work_dir = Path(work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)

    target = frame_size(ordered[0].path)
    normalized: List[NormalizedFrame] = []
    # only files this call wrote are removed on failure
    written: List[NormalizedFrame] = []
    try:
        for frame in ordered:
            dest = work_dir / _normalized_name(frame.path)
            in_place = dest.resolve() == Path(frame.path).resolve()
            with Image.open(frame.path) as image:
                if image.size == target:
                    fitted = None
                else:
                    fitted = ImageOps.fit(image.convert("RGB"), target, method=Image.LANCZOS)
            if fitted is not None:
                fitted.save(dest, format="JPEG", quality=NORMALIZED_QUALITY)
            elif not in_place:
                shutil.copyfile(frame.path, dest)
            result = NormalizedFrame(ordinal=frame.ordinal, path=dest, width=target[0], height=target[1])
            normalized.append(result)
            if not in_place:
                written.append(result)
    except Exception:
        discard_frames(written)
        raise
    logger.info("normalized %s frames to %sx%s in %s", len(normalized), target[0], target[1], work_dir)
    return normalized


def discard_frames(frames: Iterable[Frame]) -> None:
    for frame in frames:
        try:
            os.remove(frame.path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("could not remove normalized frame %s: %s", frame.path, exc)


@contextmanager
def normalized_workspace(prefix: str = "booth_norm_") -> Iterator[Path]:
    """Private directory for one render's normalized frames, removed on exit."""
    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
