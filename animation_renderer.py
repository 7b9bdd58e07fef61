#!/usr/bin/env python3
"""Render the crossfade animation with ffmpeg."""

import argparse
import asyncio
import logging
import os
import shutil
import time
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel

from booth_errors import RenderFailed
from frame_normalizer import Frame, NormalizedFrame, discard_frames, normalize_frames, normalized_workspace
from transition_graph import DurationPolicy, TransitionGraph, build_transition_graph

logger = logging.getLogger("photobooth.animation_renderer")

STDERR_TAIL_CHARS = 500


class AnimationArtifact(BaseModel):
    path: Path
    frame_count: int
    duration_seconds: float
    render_seconds: float
    size_bytes: int


def build_ffmpeg_command(
    frames: Sequence[NormalizedFrame],
    graph: TransitionGraph,
    output_path: Path,
    ffmpeg_binary: str = "ffmpeg",
) -> List[str]:
    cmd = [ffmpeg_binary, "-hide_banner", "-loglevel", "error", "-y"]
    for frame, hold in zip(frames, graph.holds):
        cmd.extend(["-loop", "1", "-t", f"{hold.duration:g}", "-i", str(frame.path)])
    cmd.extend(
        [
            "-filter_complex",
            graph.to_filter_complex(),
            "-map",
            f"[{graph.output.label}]",
            "-t",
            f"{graph.total_duration:g}",
            str(output_path),
        ]
    )
    return cmd


def _tail(data: Optional[bytes]) -> str:
    text = (data or b"").decode("utf-8", errors="replace").strip()
    return text[-STDERR_TAIL_CHARS:]


async def render_animation(
    frames: Sequence[NormalizedFrame],
    graph: TransitionGraph,
    output_path: Path,
    *,
    ffmpeg_binary: str = "ffmpeg",
    timeout: float = 300.0,
) -> AnimationArtifact:
    """Run ffmpeg once over ``frames`` and return the written artifact.

    The normalized frames are deleted before this returns, whether the
    render worked or not.
    """
    output_path = Path(output_path)
    try:
        ordered = sorted(frames, key=lambda frame: frame.ordinal)
        if len(ordered) != graph.frame_count:
            raise RenderFailed(
                f"Graph expects {graph.frame_count} frames but {len(ordered)} were supplied."
            )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_ffmpeg_command(ordered, graph, output_path, ffmpeg_binary)
        logger.info("Running ffmpeg: %s", " ".join(cmd))
        start = time.perf_counter()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise RenderFailed(f"Could not start ffmpeg ({ffmpeg_binary}): {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise RenderFailed(f"ffmpeg timed out after {timeout:.0f}s.") from exc

        elapsed = time.perf_counter() - start
        if proc.returncode != 0:
            tail = _tail(stderr)
            logger.error("ffmpeg failed (returncode=%s): %s", proc.returncode, tail)
            raise RenderFailed(
                f"ffmpeg exited with code {proc.returncode}.",
                returncode=proc.returncode,
                stderr=tail,
            )
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise RenderFailed(
                f"ffmpeg finished but produced no output at {output_path}.",
                returncode=proc.returncode,
                stderr=_tail(stderr),
            )
        return AnimationArtifact(
            path=output_path,
            frame_count=len(ordered),
            duration_seconds=graph.total_duration,
            render_seconds=elapsed,
            size_bytes=output_path.stat().st_size,
        )
    finally:
        discard_frames(frames)


def parse_args(argv: Sequence[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Crossfade a sequence of stills into an animated GIF.")
    parser.add_argument("frames", nargs="+", help="Frame images in presentation order.")
    parser.add_argument("-o", "--output", default="photos/animation.gif", help="Destination animation path.")
    parser.add_argument("--still", type=float, default=2.0, help="Seconds each still is held (default: 2).")
    parser.add_argument("--transition", type=float, default=1.0, help="Crossfade length in seconds (default: 1).")
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in DurationPolicy],
        default=DurationPolicy.OVERLAP.value,
        help="Whether crossfades overlap the stills or extend the clip.",
    )
    parser.add_argument("--ffmpeg", default=shutil.which("ffmpeg") or "ffmpeg", help="ffmpeg binary to use.")
    return parser.parse_args(argv)


async def _render_local(args: argparse.Namespace) -> AnimationArtifact:
    frames = [Frame(ordinal=i, path=Path(os.path.abspath(p))) for i, p in enumerate(args.frames)]
    graph = build_transition_graph(len(frames), args.still, args.transition, policy=DurationPolicy(args.policy))
    with normalized_workspace() as work_dir:
        normalized = normalize_frames(frames, work_dir)
        return await render_animation(normalized, graph, Path(args.output), ffmpeg_binary=args.ffmpeg)


def main(argv: Sequence[str] = None) -> None:
    args = parse_args(argv)
    artifact = asyncio.run(_render_local(args))
    print(f"Saved {artifact.frame_count}-frame animation ({artifact.duration_seconds:g}s) to {artifact.path}")


if __name__ == "__main__":
    main()
