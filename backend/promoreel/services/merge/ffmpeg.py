"""ffmpeg / ffprobe command building and execution

Commands are built as argument lists by ``build_*`` methods and executed by
``FFmpegRunner._run`` so tests can assert on commands without spawning
processes.
"""
import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from promoreel.services.merge.filters import (
    build_concat_filter,
    build_crossfade_filter,
    output_maps,
)
from promoreel.services.merge.silence import create_silence_detect_filter

logger = logging.getLogger(__name__)

# H.264/AAC output playable in browsers, moov atom up front for streaming
ENCODING_ARGS = [
    "-c:v", "libx264",
    "-preset", "fast",
    "-crf", "23",
    "-c:a", "aac",
    "-b:a", "192k",
    "-movflags", "+faststart",
]


class FFmpegError(Exception):
    """ffmpeg or ffprobe exited with a non-zero code

    Attributes:
        stderr: Full stderr of the failed process
    """

    def __init__(self, message: str, stderr: Optional[str] = None):
        super().__init__(message)
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if not self.stderr:
            return base
        tail = self.stderr.strip().splitlines()[-20:]
        return f"{base}\n--- ffmpeg stderr (last {len(tail)} lines) ---\n" + "\n".join(tail)


class FFmpegRunner:
    """Builds and runs the ffmpeg commands used by the merge worker"""

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def build_probe_command(self, input_path: Path) -> List[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(input_path),
        ]

    def build_silence_detection_command(self, input_path: Path, threshold: str, min_duration: float) -> List[str]:
        return [
            self.ffmpeg_path,
            "-i", str(input_path),
            "-af", create_silence_detect_filter(threshold, min_duration),
            "-vn",
            "-f", "null",
            os.devnull,
        ]

    def build_trim_command(self, input_path: Path, output_path: Path, end: float) -> List[str]:
        # Re-encode so the cut lands on the exact frame instead of the previous keyframe
        return [
            self.ffmpeg_path, "-y",
            "-i", str(input_path),
            "-t", f"{end:.3f}",
            *ENCODING_ARGS,
            str(output_path),
        ]

    def build_merge_command(
        self,
        input_paths: Sequence[Path],
        durations: Sequence[float],
        output_path: Path,
        crossfade: float
    ) -> List[str]:
        """Crossfade merge, or concat filter with hard cuts when ``crossfade`` is zero"""
        cmd = [self.ffmpeg_path, "-y"]
        for path in input_paths:
            cmd.extend(["-i", str(path)])

        if crossfade > 0:
            filter_complex = build_crossfade_filter(durations, crossfade)
        else:
            filter_complex = build_concat_filter(len(input_paths))

        cmd.extend(["-filter_complex", filter_complex])
        cmd.extend(output_maps())
        cmd.extend(ENCODING_ARGS)
        cmd.append(str(output_path))
        return cmd

    def _run(self, cmd: List[str], description: str) -> subprocess.CompletedProcess:
        logger.debug(f"Running {description}: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise FFmpegError(f"{description} could not be started: {e}")

        if result.returncode != 0:
            raise FFmpegError(f"{description} failed with exit code {result.returncode}", stderr=result.stderr)
        return result

    def probe_duration(self, input_path: Path) -> float:
        """Container duration in seconds"""
        result = self._run(self.build_probe_command(input_path), "ffprobe")
        try:
            return float(result.stdout.strip())
        except ValueError:
            raise FFmpegError(f"ffprobe returned no duration for {input_path.name}", stderr=result.stderr)

    def detect_silence(self, input_path: Path, threshold: str, min_duration: float) -> str:
        """Run silencedetect and return its stderr report"""
        result = self._run(
            self.build_silence_detection_command(input_path, threshold, min_duration),
            "ffmpeg silencedetect"
        )
        return result.stderr

    def trim(self, input_path: Path, output_path: Path, end: float) -> None:
        self._run(self.build_trim_command(input_path, output_path, end), "ffmpeg trim")

    def merge(
        self,
        input_paths: Sequence[Path],
        durations: Sequence[float],
        output_path: Path,
        crossfade: float
    ) -> None:
        self._run(self.build_merge_command(input_paths, durations, output_path, crossfade), "ffmpeg merge")
