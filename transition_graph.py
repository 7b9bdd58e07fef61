"""Filter graph for the still-to-still crossfade animation.

The graph is built as typed segments first and serialized to ffmpeg's
``-filter_complex`` syntax last, so the shape can be checked without parsing
text. For N frames there are N holds and N-1 crossfades; crossfade ``i``
takes the running output (or hold 0 for the first one) on the left and hold
``i`` on the right.

Two timing conventions are supported. ``OVERLAP`` lets each crossfade eat
into the neighbouring stills, so the clip lasts ``N*still - (N-1)*transition``.
``SEQUENTIAL`` pads every hold but the last by the transition length, so each
still stays fully visible for ``still`` seconds and the clip lasts
``N*still``.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

OUTPUT_PIXEL_FORMAT = "yuv420p"
OUTPUT_WIDTH = 512
OUTPUT_FPS = 15
OUTPUT_LABEL = "vout"


class DurationPolicy(str, Enum):
    OVERLAP = "overlap"
    SEQUENTIAL = "sequential"


class HoldSegment(BaseModel):
    index: int = Field(..., ge=0)
    duration: float = Field(..., gt=0)

    @property
    def input_label(self) -> str:
        return f"{self.index}:v"

    @property
    def label(self) -> str:
        return f"h{self.index}"


class TransitionSegment(BaseModel):
    index: int = Field(..., ge=1)
    left: str
    right: str
    output: str
    duration: float = Field(..., gt=0)
    offset: float = Field(..., ge=0)


class OutputStage(BaseModel):
    input: str
    pixel_format: str = OUTPUT_PIXEL_FORMAT
    width: int = OUTPUT_WIDTH
    fps: int = OUTPUT_FPS
    label: str = OUTPUT_LABEL


def _fmt(value: float) -> str:
    return f"{value:g}"


class TransitionGraph(BaseModel):
    holds: List[HoldSegment]
    transitions: List[TransitionSegment]
    output: OutputStage
    total_duration: float
    policy: DurationPolicy

    @property
    def frame_count(self) -> int:
        return len(self.holds)

    def hold_filter(self, hold: HoldSegment) -> str:
        return (
            f"[{hold.input_label}]trim=duration={_fmt(hold.duration)},setpts=PTS-STARTPTS,"
            f"fps={self.output.fps},format={self.output.pixel_format},setsar=1[{hold.label}]"
        )

    def transition_filter(self, transition: TransitionSegment) -> str:
        return (
            f"[{transition.left}][{transition.right}]xfade=transition=fade:"
            f"duration={_fmt(transition.duration)}:offset={_fmt(transition.offset)}[{transition.output}]"
        )

    def output_filter(self) -> str:
        stage = self.output
        return (
            f"[{stage.input}]format={stage.pixel_format},scale={stage.width}:-1:flags=lanczos,"
            f"fps={stage.fps}[{stage.label}]"
        )

    def to_filter_complex(self) -> str:
        parts = [self.hold_filter(hold) for hold in self.holds]
        parts.extend(self.transition_filter(transition) for transition in self.transitions)
        parts.append(self.output_filter())
        return ";".join(parts)


def total_duration(
    frame_count: int,
    still_duration: float,
    transition_duration: float,
    policy: DurationPolicy = DurationPolicy.OVERLAP,
) -> float:
    if policy == DurationPolicy.SEQUENTIAL:
        return frame_count * still_duration
    return frame_count * still_duration - (frame_count - 1) * transition_duration


def build_transition_graph(
    frame_count: int,
    still_duration: float,
    transition_duration: float,
    *,
    policy: DurationPolicy = DurationPolicy.OVERLAP,
    output: Optional[OutputStage] = None,
) -> TransitionGraph:
    if frame_count < 1:
        raise ValueError("frame_count must be at least 1.")
    if still_duration <= 0 or transition_duration <= 0:
        raise ValueError("Durations must be positive.")
    if transition_duration >= still_duration:
        raise ValueError("transition_duration must be shorter than still_duration.")
    policy = DurationPolicy(policy)

    holds = []
    for index in range(frame_count):
        duration = still_duration
        if policy == DurationPolicy.SEQUENTIAL and index < frame_count - 1:
            duration += transition_duration
        holds.append(HoldSegment(index=index, duration=duration))

    transitions = []
    current = holds[0].label
    running_length = holds[0].duration
    for hold in holds[1:]:
        offset = running_length - transition_duration
        segment = TransitionSegment(
            index=hold.index,
            left=current,
            right=hold.label,
            output=f"x{hold.index}",
            duration=transition_duration,
            offset=round(offset, 6),
        )
        transitions.append(segment)
        current = segment.output
        running_length = offset + hold.duration

    stage = (output or OutputStage(input=current)).model_copy(update={"input": current})
    return TransitionGraph(
        holds=holds,
        transitions=transitions,
        output=stage,
        total_duration=round(running_length, 6),
        policy=policy,
    )
