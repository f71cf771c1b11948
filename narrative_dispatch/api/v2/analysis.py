"""
Endpoints de jobs de análise (analysis).
Submissão, polling, cancelamento, saúde dos providers e reload da tabela.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from narrative_dispatch.schemas.v2.jobs import (
    HealthResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobStatusResponse,
    ReloadResponse,
)
from narrative_dispatch.services.llm.analysis_service import AnalysisService, JobRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def get_analysis_service(request: Request) -> AnalysisService:
    """Instância criada no startup do app (app.state.analysis_service)."""
    service = getattr(request.app.state, "analysis_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Serviço de análise não inicializado",
        )
    return service


@router.post("/jobs", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    body: JobCreateRequest,
    service: AnalysisService = Depends(get_analysis_service),
):
    """
    Cria um job de análise e retorna 202 com o job_id para polling.
    Erros de tipo/provider desconhecido e orçamento são traduzidos pelo handler global.
    """
    job_id = service.submit(JobRequest(
        text=body.text,
        job_type=body.job_type,
        priority=body.priority,
        manuscript_id=body.manuscript_id,
        provider_id=body.provider_id,
        max_retries=body.max_retries,
    ))
    job = service.get(job_id)
    return JobCreateResponse(
        job_id=job.id,
        status=job.status.value,
        provider_id=job.provider_id,
        windows_total=job.windows_total,
        estimated_cost_usd=round(job.estimated_cost, 6),
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, service: AnalysisService = Depends(get_analysis_service)):
    """Estado do job: status, progress e result ou error."""
    return service.get(job_id).to_dict()


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(job_id: str, service: AnalysisService = Depends(get_analysis_service)):
    """Cancela o job; chamadas já em andamento terminam e são descartadas."""
    return service.cancel(job_id).to_dict()


@router.get("/health", response_model=HealthResponse)
async def get_health(service: AnalysisService = Depends(get_analysis_service)):
    """Snapshot de utilização, erros e latência por provider."""
    payload = service.health_monitor.snapshot().to_dict()
    if service.budget is not None:
        payload["budget"] = service.budget.get_status()
    return payload


@router.post("/providers/reload", response_model=ReloadResponse)
async def reload_providers(service: AnalysisService = Depends(get_analysis_service)):
    """Recarrega a tabela de providers sem reiniciar jobs em andamento."""
    try:
        count = service.registry.reload()
    except (ValidationError, ValueError) as e:
        logger.error(f"❌ [PROVIDERS_RELOAD] falhou: {e}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": f"Tabela de providers inválida: {e}"},
        )

    logger.info(f"🔁 [PROVIDERS_RELOAD] {count} providers carregados")
    return ReloadResponse(
        providers_loaded=count,
        provider_ids=service.registry.provider_ids,
        version=service.registry.version,
    )
