"""Domain exceptions shared by services, workers and API routers"""
from typing import Any, Dict, Optional


class AdmissionError(Exception):
    """A job was refused before any state was written"""
    status_code = 400

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self)}


class InvalidJobRequestError(AdmissionError):
    """Malformed job creation request"""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "field": self.field}


class InsufficientCreditsError(AdmissionError):
    """Not enough credit in the selected pool"""
    status_code = 402

    def __init__(self, pool: str, required: int, available: int):
        super().__init__(f"Insufficient credits. Required: {required}, Available: {available}")
        self.pool = pool
        self.required = required
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "Insufficient credits",
            "pool": self.pool,
            "required": self.required,
            "available": self.available,
        }


class JobNotFoundError(Exception):
    """No job with the given id (or not owned by the caller)"""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class SceneGenerationError(Exception):
    """The scene generation collaborator failed for a scene"""

    def __init__(self, message: str, scene_index: Optional[int] = None):
        super().__init__(message)
        self.scene_index = scene_index


class MergeStageError(Exception):
    """A merge worker stage failed; carries the stage tag reported to the reconciler"""

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage
        self.message = message

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class CallbackUnauthorizedError(Exception):
    """Merge callback carried a wrong or missing secret"""


class CallbackPayloadError(Exception):
    """Merge callback body could not be parsed"""
