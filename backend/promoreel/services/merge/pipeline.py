"""Merge worker pipeline: download, trim trailing silence, crossfade, upload

``MergeWorker.run`` never raises and never touches job state. Every run ends
in a ``MergeOutcome`` that the caller reports to the merge callback.
"""
import logging
import shutil
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from promoreel.core.config import settings
from promoreel.core.exceptions import MergeStageError
from promoreel.core.logging import merge_logger
from promoreel.core.metrics import merge_duration_histogram, merge_runs_counter
from promoreel.schemas.merge import (
    STAGE_DOWNLOAD,
    STAGE_MERGE,
    STAGE_SILENCE_DETECTION,
    STAGE_TRIM,
    STAGE_UPLOAD,
    ClipRef,
    MergeFailed,
    MergeOutcome,
    MergeRequest,
    MergeSucceeded,
)
from promoreel.services.merge.ffmpeg import FFmpegError, FFmpegRunner
from promoreel.services.merge.filters import effective_crossfade, expected_total_duration
from promoreel.services.merge.silence import find_trim_point, parse_silence_segments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergePolicy:
    """Tunables of one merge run"""
    crossfade_duration: float = 0.3
    silence_threshold: str = "-30dB"
    silence_min_duration: float = 0.4
    tail_padding: float = 0.3
    min_position_ratio: float = 0.5
    download_workers: int = 4
    download_retries: int = 3
    retry_backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls) -> "MergePolicy":
        return cls(
            crossfade_duration=settings.MERGE_CROSSFADE_DURATION,
            silence_threshold=settings.SILENCE_THRESHOLD,
            silence_min_duration=settings.SILENCE_MIN_DURATION,
            tail_padding=settings.SILENCE_TAIL_PADDING,
            min_position_ratio=settings.SILENCE_MIN_POSITION_RATIO,
            download_workers=settings.MERGE_DOWNLOAD_WORKERS,
            download_retries=settings.MERGE_DOWNLOAD_RETRIES,
        )


@dataclass
class PreparedClip:
    clip: ClipRef
    path: Path
    duration: float
    trimmed: bool = False


class ScratchDirectory:
    """Per-job working directory, removed on exit whatever happened"""

    def __init__(self, base_dir: Path, job_id: str):
        self.path = base_dir / f"merge_{job_id}_{uuid.uuid4().hex[:8]}"

    def __enter__(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        return self.path

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug(f"Removed scratch directory {self.path}")


class MergeWorker:
    """Turns a MergeRequest into a single uploaded video"""

    def __init__(
        self,
        storage,
        runner: Optional[FFmpegRunner] = None,
        policy: Optional[MergePolicy] = None,
        scratch_dir: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.storage = storage
        self.runner = runner or FFmpegRunner(settings.FFMPEG_PATH, settings.FFPROBE_PATH)
        self.policy = policy or MergePolicy.from_settings()
        self.scratch_dir = scratch_dir or settings.MERGE_SCRATCH_DIR
        self._sleep = sleep

    def run(self, request: MergeRequest) -> MergeOutcome:
        started = time.monotonic()
        try:
            outcome = self._run(request)
        except MergeStageError as e:
            merge_logger.error(f"Merge failed for job {request.job_id} at {e.stage}: {e.message}")
            outcome = MergeFailed(stage=e.stage, message=e.message)
        except Exception as e:
            merge_logger.error(f"Unexpected merge error for job {request.job_id}: {e}", exc_info=True)
            outcome = MergeFailed(stage=None, message=f"Unexpected merge error: {e}")
        finally:
            merge_duration_histogram.observe(time.monotonic() - started)

        if isinstance(outcome, MergeSucceeded):
            merge_runs_counter.labels(result="succeeded", stage="").inc()
        else:
            merge_runs_counter.labels(result="failed", stage=outcome.stage or "").inc()
        return outcome

    def _run(self, request: MergeRequest) -> MergeOutcome:
        if not request.clips:
            raise MergeStageError(STAGE_DOWNLOAD, "No clips to merge")

        crossfade = request.crossfade_duration
        if crossfade is None:
            crossfade = self.policy.crossfade_duration
        clips = sorted(request.clips, key=lambda c: c.scene_index)
        merge_logger.info(f"Merging {len(clips)} clips for job {request.job_id} (crossfade {crossfade}s)")

        with ScratchDirectory(Path(self.scratch_dir), request.job_id) as work_dir:
            paths = self._download_all(clips, work_dir)
            prepared = [self._prepare_clip(clip, path, work_dir) for clip, path in zip(clips, paths)]

            durations = [p.duration for p in prepared]
            applied_crossfade = effective_crossfade(crossfade, durations)
            total_duration = expected_total_duration(durations, applied_crossfade)

            output_path = work_dir / "final.mp4"
            self._merge(prepared, output_path, applied_crossfade)

            try:
                url = self.storage.upload_file(output_path, request.output_key, "video/mp4")
            except Exception as e:
                raise MergeStageError(STAGE_UPLOAD, f"Failed to upload merged video: {e}")

        merge_logger.info(
            f"Merged job {request.job_id}: {len(prepared)} clips, "
            f"{sum(p.trimmed for p in prepared)} trimmed, {total_duration:.2f}s total"
        )
        return MergeSucceeded(
            final_video_url=url,
            final_video_key=request.output_key,
            total_duration=total_duration,
        )

    def _download_all(self, clips: List[ClipRef], work_dir: Path) -> List[Path]:
        paths = [work_dir / f"scene_{clip.scene_index}.mp4" for clip in clips]
        workers = max(1, min(self.policy.download_workers, len(clips)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._download_with_retries, clip, path) for clip, path in zip(clips, paths)]
            for future in futures:
                future.result()
        return paths

    def _download_with_retries(self, clip: ClipRef, path: Path) -> None:
        attempts = max(1, self.policy.download_retries)
        for attempt in range(1, attempts + 1):
            try:
                self.storage.download_file(clip.location, path)
                return
            except Exception as e:
                if attempt == attempts:
                    raise MergeStageError(
                        STAGE_DOWNLOAD,
                        f"Failed to download scene {clip.scene_index} after {attempts} attempts: {e}"
                    )
                delay = self.policy.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"Download of {clip.location} failed (attempt {attempt}/{attempts}), retrying in {delay}s: {e}")
                self._sleep(delay)

    def _prepare_clip(self, clip: ClipRef, path: Path, work_dir: Path) -> PreparedClip:
        """Probe a clip and cut its trailing silence if it has one"""
        try:
            duration = self.runner.probe_duration(path)
        except FFmpegError as e:
            if clip.duration <= 0:
                raise MergeStageError(STAGE_SILENCE_DETECTION, f"Could not read duration of scene {clip.scene_index}: {e}")
            logger.warning(f"ffprobe failed for scene {clip.scene_index}, using reported duration {clip.duration}s")
            duration = clip.duration

        try:
            report = self.runner.detect_silence(path, self.policy.silence_threshold, self.policy.silence_min_duration)
        except FFmpegError as e:
            raise MergeStageError(STAGE_SILENCE_DETECTION, f"Silence detection failed for scene {clip.scene_index}: {e}")

        trim_point = find_trim_point(
            parse_silence_segments(report),
            duration,
            padding=self.policy.tail_padding,
            min_position_ratio=self.policy.min_position_ratio
        )
        if trim_point is None:
            return PreparedClip(clip=clip, path=path, duration=duration)

        trimmed_path = work_dir / f"trimmed_{clip.scene_index}.mp4"
        try:
            self.runner.trim(path, trimmed_path, trim_point)
        except FFmpegError as e:
            raise MergeStageError(STAGE_TRIM, f"Trimming scene {clip.scene_index} failed: {e}")

        merge_logger.info(f"Scene {clip.scene_index}: {duration:.2f}s -> {trim_point:.2f}s")
        return PreparedClip(clip=clip, path=trimmed_path, duration=trim_point, trimmed=True)

    def _merge(self, prepared: List[PreparedClip], output_path: Path, crossfade: float) -> None:
        try:
            if len(prepared) == 1:
                shutil.copyfile(prepared[0].path, output_path)
            else:
                self.runner.merge(
                    [p.path for p in prepared],
                    [p.duration for p in prepared],
                    output_path,
                    crossfade
                )
        except (FFmpegError, OSError) as e:
            raise MergeStageError(STAGE_MERGE, f"Merging clips failed: {e}")
