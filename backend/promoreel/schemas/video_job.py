"""Pydantic schemas for video jobs"""
from typing import Optional

from pydantic import BaseModel


class CreateJobRequest(BaseModel):
    """Job creation request; field rules are enforced by the orchestrator"""
    product_name: str
    product_description: str
    target_length: int
    aspect_ratio: Optional[str] = None
