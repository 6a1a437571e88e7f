"""Merge worker callback route"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from promoreel.core.exceptions import CallbackPayloadError, CallbackUnauthorizedError, JobNotFoundError
from promoreel.db.session import get_db
from promoreel.schemas.callback import MergeCallbackResponse
from promoreel.services.callback_service import handle_merge_callback

router = APIRouter(prefix="/api/videos", tags=["callbacks"])
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=MergeCallbackResponse(success=False, error=message).model_dump(exclude_defaults=True))


@router.post("/merge-callback")
async def merge_callback(request: Request, db: Session = Depends(get_db)):
    """Receive the merge worker's outcome for a STITCHING job

    Authenticated by the shared secret in the body rather than a user session.
    Repeated and late callbacks are acknowledged without changing the job.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = {}

    try:
        result = handle_merge_callback(body, db)
    except CallbackUnauthorizedError:
        return _error(401, "Unauthorized")
    except CallbackPayloadError as e:
        return _error(400, str(e))
    except JobNotFoundError:
        return _error(404, "Job not found")
    except Exception as e:
        logger.error(f"Error handling merge callback: {e}", exc_info=True)
        db.rollback()
        return _error(500, "Internal server error")

    return MergeCallbackResponse(success=True, status=result.status, applied=result.applied).model_dump(exclude_none=True)
