"""Reports merge outcomes to the merge callback endpoint"""
import time
from typing import Optional

import httpx

from promoreel.core.config import settings
from promoreel.core.logging import merge_logger
from promoreel.schemas.callback import MergeCallbackPayload
from promoreel.schemas.merge import MergeOutcome


class MergeCallbackClient:
    """POSTs a MergeOutcome to ``{BACKEND_URL}{MERGE_CALLBACK_PATH}``

    Network errors and 5xx responses are retried; a 4xx answer is final.
    """

    def __init__(
        self,
        callback_url: Optional[str] = None,
        secret: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0
    ):
        self.callback_url = callback_url or f"{settings.BACKEND_URL.rstrip('/')}{settings.MERGE_CALLBACK_PATH}"
        self.secret = secret if secret is not None else settings.MERGE_CALLBACK_SECRET
        self.http_client = http_client or httpx.Client(timeout=30.0)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def report(self, job_id: str, outcome: MergeOutcome) -> bool:
        """Deliver an outcome

        Returns:
            True if the callback endpoint acknowledged it
        """
        payload = MergeCallbackPayload.from_outcome(job_id, outcome, self.secret)
        body = payload.model_dump(by_alias=True, exclude_none=True)

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.http_client.post(self.callback_url, json=body)
            except httpx.RequestError as e:
                merge_logger.warning(f"Callback for job {job_id} failed (attempt {attempt}/{self.max_attempts}): {e}")
            else:
                if response.status_code < 400:
                    merge_logger.info(f"Reported {outcome.kind} outcome for job {job_id}")
                    return True
                if response.status_code < 500:
                    merge_logger.error(
                        f"Callback for job {job_id} rejected with HTTP {response.status_code}: {response.text[:200]}"
                    )
                    return False
                merge_logger.warning(
                    f"Callback for job {job_id} got HTTP {response.status_code} (attempt {attempt}/{self.max_attempts})"
                )

            if attempt < self.max_attempts:
                time.sleep(self.backoff_seconds * attempt)

        merge_logger.error(f"Giving up reporting outcome for job {job_id}; the stale job sweep will fail it")
        return False
