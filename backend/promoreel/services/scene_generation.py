"""Scene generation collaborator - renders one scene clip of a job"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from promoreel.core.config import settings
from promoreel.core.exceptions import SceneGenerationError
from promoreel.models.video_job import VideoJob
from promoreel.services.storage.s3_service import scene_clip_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SceneClip:
    location: str  # Object key of the rendered clip
    scene_index: int
    duration: float


class SceneGenerator(Protocol):
    async def generate_scene(self, job: VideoJob, scene_index: int) -> SceneClip: ...


class HttpSceneGenerator:
    """Scene generator backed by the external rendering API

    The API renders the clip, stores it under the key we hand it and answers
    with the clip duration.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.SCENE_API_BASE_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.SCENE_API_KEY
        self.timeout = timeout or settings.SCENE_API_TIMEOUT
        self.transport = transport

    async def generate_scene(self, job: VideoJob, scene_index: int) -> SceneClip:
        if not self.base_url:
            raise SceneGenerationError("SCENE_API_BASE_URL is not configured", scene_index)

        output_key = scene_clip_key(job.id, scene_index)
        request_body = {
            "job_id": job.id,
            "scene_index": scene_index,
            "scene_count": job.scene_count,
            "product_name": job.product_name,
            "product_description": job.product_description,
            "target_length": job.target_length,
            "aspect_ratio": job.aspect_ratio,
            "output_key": output_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/scenes",
                    json=request_body,
                    headers={"Authorization": f"Bearer {self.api_key}"}
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise SceneGenerationError(
                f"Scene API returned HTTP {e.response.status_code} for scene {scene_index}",
                scene_index
            )
        except (httpx.RequestError, ValueError) as e:
            raise SceneGenerationError(f"Scene API request failed for scene {scene_index}: {e}", scene_index)

        try:
            duration = float(data["duration"])
        except (KeyError, TypeError, ValueError):
            raise SceneGenerationError(f"Scene API response for scene {scene_index} has no duration", scene_index)
        if duration <= 0:
            raise SceneGenerationError(f"Scene API returned empty clip for scene {scene_index}", scene_index)

        location = data.get("location") or output_key
        logger.info(f"Generated scene {scene_index} for job {job.id} ({duration:.2f}s)")
        return SceneClip(location=location, scene_index=scene_index, duration=duration)
