"""Merge worker: silence-aware crossfade of scene clips into one video"""
from promoreel.services.merge.callback_client import MergeCallbackClient
from promoreel.services.merge.ffmpeg import FFmpegError, FFmpegRunner
from promoreel.services.merge.pipeline import MergePolicy, MergeWorker

__all__ = ["MergeCallbackClient", "FFmpegError", "FFmpegRunner", "MergePolicy", "MergeWorker"]
