"""
Schemas para API v2.
"""
from narrative_dispatch.schemas.v2.jobs import (
    HealthResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobStatusResponse,
    ReloadResponse,
)

__all__ = [
    "JobCreateRequest",
    "JobCreateResponse",
    "JobStatusResponse",
    "HealthResponse",
    "ReloadResponse",
]
