"""S3 (or S3-compatible) object storage for scene clips and final videos"""
import logging
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from promoreel.core.config import settings

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    """Storage contract used by the merge worker and the read paths"""

    def upload(self, key: str, data: bytes, content_type: str) -> str: ...

    def list_prefix(self, prefix: str) -> List[str]: ...

    def sign_for_playback(self, key: str, ttl_seconds: int) -> str: ...

    def download_file(self, key: str, local_path: Path) -> None: ...

    def upload_file(self, local_path: Path, key: str, content_type: str) -> str: ...


class StorageError(Exception):
    """An object storage call failed"""


def scene_clip_key(job_id: str, scene_index: int) -> str:
    return f"video-jobs/{job_id}/scenes/scene_{scene_index}_raw.mp4"


def final_video_key(job_id: str) -> str:
    return f"video-jobs/{job_id}/final/final_video.mp4"


def _encode_object_key_for_url(object_key: str) -> str:
    """URL-encode each path segment, keeping slashes as separators"""
    return '/'.join(quote(segment, safe='') for segment in object_key.split('/'))


class S3StorageService:
    """boto3-backed ObjectStorage"""

    def __init__(self, bucket: Optional[str] = None, s3_client=None):
        self.bucket = bucket or settings.S3_BUCKET_NAME
        if not self.bucket:
            raise ValueError("S3_BUCKET_NAME is not set. Set S3_BUCKET_NAME environment variable.")

        if s3_client is None:
            s3_client = boto3.client(
                's3',
                region_name=settings.S3_REGION,
                endpoint_url=settings.S3_ENDPOINT_URL or None,
                aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
                aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
                config=Config(signature_version='s3v4')
            )
        self.s3_client = s3_client
        logger.info(f"S3StorageService initialized for bucket: {self.bucket}")

    def object_url(self, key: str) -> str:
        """Stable (unsigned) URL recorded as a job's final video location"""
        encoded = _encode_object_key_for_url(key.lstrip('/'))
        if settings.S3_PUBLIC_BASE_URL:
            return f"{settings.S3_PUBLIC_BASE_URL.rstrip('/')}/{encoded}"
        if settings.S3_ENDPOINT_URL:
            return f"{settings.S3_ENDPOINT_URL.rstrip('/')}/{self.bucket}/{encoded}"
        return f"https://{self.bucket}.s3.{settings.S3_REGION}.amazonaws.com/{encoded}"

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        if not key:
            raise ValueError("key cannot be empty")
        try:
            self.s3_client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {key}: {e}", exc_info=True)
            raise StorageError(f"Failed to upload {key}: {e}")
        return self.object_url(key)

    def upload_file(self, local_path: Path, key: str, content_type: str) -> str:
        if not key:
            raise ValueError("key cannot be empty")
        try:
            self.s3_client.upload_file(
                str(local_path),
                self.bucket,
                key,
                ExtraArgs={'ContentType': content_type}
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {local_path} to {key}: {e}", exc_info=True)
            raise StorageError(f"Failed to upload {key}: {e}")
        logger.info(f"Uploaded {local_path.name} to {key}")
        return self.object_url(key)

    def download_file(self, key: str, local_path: Path) -> None:
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            self.s3_client.download_file(self.bucket, key, str(local_path))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to download {key}: {e}")
        logger.debug(f"Downloaded {key} to {local_path}")

    def list_prefix(self, prefix: str) -> List[str]:
        """All keys under ``prefix``, sorted"""
        keys = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj['Key'] for obj in page.get('Contents', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list {prefix}: {e}", exc_info=True)
            raise StorageError(f"Failed to list {prefix}: {e}")
        return sorted(keys)

    def sign_for_playback(self, key: str, ttl_seconds: int = 3600) -> str:
        """Presigned GET URL for the browser player"""
        if not key:
            raise ValueError("key cannot be empty")
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': key},
                ExpiresIn=ttl_seconds
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to sign {key}: {e}", exc_info=True)
            raise StorageError(f"Failed to generate playback URL: {e}")


_storage_service: Optional[S3StorageService] = None


def get_storage_service() -> S3StorageService:
    """Get or create the storage service (lazy initialization)

    Raises:
        ValueError: If storage configuration is missing
    """
    global _storage_service
    if _storage_service is None:
        _storage_service = S3StorageService()
    return _storage_service
