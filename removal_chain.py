"""Iterative removal edits and the background animation job.

Each removal pass edits the output of the previous pass, so the passes run
strictly one after another. The animation job that follows the chain runs
detached from the request: the client already has its response, and any
failure here ends up in the log only.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import List, Optional

from animation_renderer import AnimationArtifact, render_animation
from booth_errors import BoothError, ChainAborted
from booth_settings import BoothSettings
from frame_normalizer import Frame, normalize_frames, normalized_workspace
from style_editor import StyleEditor
from transition_graph import build_transition_graph

logger = logging.getLogger("photobooth.removal_chain")


async def _run_pass(
    editor: StyleEditor,
    current_ref: str,
    remove_prompt: str,
    frame_path: Path,
    *,
    upload_next: bool,
) -> Optional[str]:
    result = await editor.edit(current_ref, remove_prompt)
    data = await editor.fetch(result.image_ref)
    frame_path.write_bytes(data)
    if not upload_next:
        return None
    return await editor.upload(data, frame_path.name)


async def run_removal_chain(
    editor: StyleEditor,
    initial_frame: Path,
    remove_prompt: str,
    passes: int,
    photo_dir: Path,
    photo_id: int,
    *,
    pass_delay: float = 1.5,
    pass_timeout: Optional[float] = None,
) -> List[Frame]:
    if passes < 1:
        raise ValueError("passes must be at least 1.")
    initial_frame = Path(initial_frame)
    photo_dir = Path(photo_dir)
    frames = [Frame(ordinal=0, path=initial_frame)]

    try:
        current_ref = await asyncio.wait_for(
            editor.upload(initial_frame.read_bytes(), initial_frame.name), timeout=pass_timeout
        )
    except (BoothError, OSError, asyncio.TimeoutError) as exc:
        raise ChainAborted(f"Could not upload starting frame: {exc}", pass_number=0) from exc

    for pass_number in range(1, passes + 1):
        frame_path = photo_dir / f"{photo_id}_remove{pass_number}.jpg"
        is_last = pass_number == passes
        logger.info("photo %s: removal pass %s/%s", photo_id, pass_number, passes)
        try:
            next_ref = await asyncio.wait_for(
                _run_pass(editor, current_ref, remove_prompt, frame_path, upload_next=not is_last),
                timeout=pass_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ChainAborted(
                f"Removal pass {pass_number} timed out after {pass_timeout:.0f}s.", pass_number=pass_number
            ) from exc
        except (BoothError, OSError) as exc:
            detail = exc.to_detail() if isinstance(exc, BoothError) else None
            raise ChainAborted(
                f"Removal pass {pass_number} failed: {exc}", pass_number=pass_number, detail=detail
            ) from exc

        frames.append(Frame(ordinal=pass_number, path=frame_path))
        logger.info("photo %s: saved removal #%s to %s", photo_id, pass_number, frame_path)
        if not is_last:
            await asyncio.sleep(pass_delay)
            current_ref = next_ref

    return frames


async def run_animation_job(
    editor: StyleEditor,
    settings: BoothSettings,
    composite_path: Path,
    photo_id: int,
    remove_prompt: str,
) -> Optional[AnimationArtifact]:
    """Build ``<photo_id>.gif`` next to the composite. Never raises ``BoothError``."""
    start = time.perf_counter()
    output_path = Path(settings.photo_dir) / f"{photo_id}.gif"
    try:
        frames = await run_removal_chain(
            editor,
            Path(composite_path),
            remove_prompt,
            settings.removal_passes,
            Path(settings.photo_dir),
            photo_id,
            pass_delay=settings.pass_delay_seconds,
            pass_timeout=settings.pass_timeout_seconds,
        )
        graph = build_transition_graph(
            len(frames),
            settings.still_duration,
            settings.transition_duration,
            policy=settings.duration_policy,
        )
        with normalized_workspace(prefix=f"booth_norm_{photo_id}_") as work_dir:
            normalized = await asyncio.to_thread(normalize_frames, frames, work_dir)
            artifact = await render_animation(
                normalized,
                graph,
                output_path,
                ffmpeg_binary=settings.ffmpeg_binary,
                timeout=settings.render_timeout_seconds,
            )
    except BoothError as exc:
        logger.exception("photo %s: background animation failed (%s): %s", photo_id, exc.code, exc.message)
        return None
    except Exception:
        logger.exception("photo %s: background animation crashed", photo_id)
        return None

    logger.info(
        "photo %s: animation ready in %.2fs -> %s (%s frames, %gs)",
        photo_id,
        time.perf_counter() - start,
        artifact.path,
        artifact.frame_count,
        artifact.duration_seconds,
    )
    return artifact
