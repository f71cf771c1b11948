"""
Router principal para API v2.
Agrupa todos os endpoints v2 em um único router.
"""
from fastapi import APIRouter, Depends

from narrative_dispatch.api.v2 import analysis
from narrative_dispatch.core.security import require_api_key

router = APIRouter()


@router.get("/")
async def v2_root():
    """Endpoint raiz da API v2 - lista endpoints disponíveis."""
    return {
        "version": "v2",
        "status": "ok",
        "endpoints": {
            "create_job": "POST /api/v2/analysis/jobs",
            "get_job": "GET /api/v2/analysis/jobs/{job_id}",
            "cancel_job": "POST /api/v2/analysis/jobs/{job_id}/cancel",
            "health": "GET /api/v2/analysis/health",
            "reload_providers": "POST /api/v2/analysis/providers/reload",
        },
        "docs": "/docs"
    }


router.include_router(
    analysis.router,
    prefix="/analysis",
    tags=["v2-analysis"],
    dependencies=[Depends(require_api_key)],
)

__all__ = ["router"]
