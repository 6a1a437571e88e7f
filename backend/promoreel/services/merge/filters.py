"""Crossfade filter graphs and duration arithmetic for merged videos"""
import math
from typing import List, Sequence, Tuple

VIDEO_OUTPUT_LABEL = "[outv]"
AUDIO_OUTPUT_LABEL = "[outa]"


def round_duration(seconds: float) -> int:
    """Nearest whole second, halves rounded away from zero"""
    if seconds is None:
        return 0
    return int(math.copysign(math.floor(abs(seconds) + 0.5), seconds))


def effective_crossfade(crossfade: float, durations: Sequence[float]) -> float:
    """Crossfade actually applied: never negative and never longer than the shortest clip"""
    if len(durations) < 2 or crossfade <= 0:
        return 0.0
    return min(crossfade, min(durations))


def expected_total_duration(durations: Sequence[float], crossfade: float) -> float:
    """Length of the merged video: every transition overlaps two clips by ``crossfade``"""
    if not durations:
        return 0.0
    applied = effective_crossfade(crossfade, durations)
    return sum(durations) - applied * (len(durations) - 1)


def crossfade_offsets(durations: Sequence[float], crossfade: float) -> List[float]:
    """Start time of each transition on the merged timeline"""
    offsets = []
    cumulative = durations[0]
    for duration in durations[1:]:
        offsets.append(cumulative - crossfade)
        cumulative += duration - crossfade
    return offsets


def build_crossfade_filter(durations: Sequence[float], crossfade: float) -> str:
    """Chain xfade (video) and acrossfade (audio) over every adjacent clip pair

    Input ``i`` of the ffmpeg command is clip ``i``. The last pair writes to
    ``[outv]`` / ``[outa]``.
    """
    count = len(durations)
    if count < 2:
        return f"[0:v]null{VIDEO_OUTPUT_LABEL};[0:a]anull{AUDIO_OUTPUT_LABEL}"

    filters = []
    last_video = "[0:v]"
    last_audio = "[0:a]"
    for i, offset in enumerate(crossfade_offsets(durations, crossfade), start=1):
        video_label = VIDEO_OUTPUT_LABEL if i == count - 1 else f"[v{i}]"
        audio_label = AUDIO_OUTPUT_LABEL if i == count - 1 else f"[a{i}]"
        filters.append(
            f"{last_video}[{i}:v]xfade=transition=fade:duration={crossfade:g}:offset={offset:.3f}{video_label}"
        )
        filters.append(
            f"{last_audio}[{i}:a]acrossfade=d={crossfade:g}:c1=tri:c2=tri{audio_label}"
        )
        last_video = video_label
        last_audio = audio_label

    return ";".join(filters)


def build_concat_filter(count: int) -> str:
    """Hard cuts between clips (crossfade of zero)"""
    inputs = "".join(f"[{i}:v][{i}:a]" for i in range(count))
    return f"{inputs}concat=n={count}:v=1:a=1{VIDEO_OUTPUT_LABEL}{AUDIO_OUTPUT_LABEL}"


def output_maps() -> Tuple[str, ...]:
    return ("-map", VIDEO_OUTPUT_LABEL, "-map", AUDIO_OUTPUT_LABEL)
