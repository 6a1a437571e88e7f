"""Trailing-silence detection for scene clips

Generated scenes usually end with a second or two of dead air after the
voice-over. ffmpeg's ``silencedetect`` reports silent regions on stderr; the
clip is cut shortly after the last region starts, provided that region
reaches the end of the clip.
"""
import re
from dataclasses import dataclass
from typing import List, Optional

_SILENCE_START_PATTERN = re.compile(r"silence_start:\s*(-?[0-9.]+)")
_SILENCE_END_PATTERN = re.compile(r"silence_end:\s*(-?[0-9.]+)")

# A region ending this close to the clip end counts as running to the end
END_TOLERANCE_SECONDS = 0.05


@dataclass(frozen=True)
class SilenceSegment:
    start: float
    end: Optional[float]  # None when the clip ended while still silent

    @property
    def duration(self) -> Optional[float]:
        if self.end is None:
            return None
        return self.end - self.start


def create_silence_detect_filter(threshold: str = "-30dB", min_duration: float = 0.4) -> str:
    return f"silencedetect=noise={threshold}:d={min_duration}"


def parse_silence_segments(ffmpeg_output: str) -> List[SilenceSegment]:
    """Silent regions in the order ffmpeg reported them"""
    segments: List[SilenceSegment] = []
    current_start: Optional[float] = None

    for line in ffmpeg_output.splitlines():
        start_match = _SILENCE_START_PATTERN.search(line)
        if start_match:
            current_start = max(0.0, float(start_match.group(1)))
            continue

        end_match = _SILENCE_END_PATTERN.search(line)
        if end_match and current_start is not None:
            segments.append(SilenceSegment(start=current_start, end=float(end_match.group(1))))
            current_start = None

    if current_start is not None:
        segments.append(SilenceSegment(start=current_start, end=None))

    return segments


def find_trim_point(
    segments: List[SilenceSegment],
    clip_duration: float,
    padding: float = 0.3,
    min_position_ratio: float = 0.5
) -> Optional[float]:
    """Where to cut a clip, or None to keep it whole

    Args:
        segments: Silent regions of the clip
        clip_duration: Clip length in seconds
        padding: Seconds kept after the silence starts
        min_position_ratio: Silence starting earlier than this share of the
            clip is a pause in speech, not a trailing tail
    """
    if not segments or clip_duration <= 0:
        return None

    last = segments[-1]
    if last.end is not None and last.end < clip_duration - END_TOLERANCE_SECONDS:
        return None
    if last.start < clip_duration * min_position_ratio:
        return None

    trim_point = last.start + padding
    if trim_point >= clip_duration:
        return None
    return trim_point
