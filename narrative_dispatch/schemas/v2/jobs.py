"""
Schemas Pydantic para os endpoints de jobs de análise v2.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from narrative_dispatch.services.llm.constants import JOB_TYPES


class JobCreateRequest(BaseModel):
    """Request para criar um job de análise."""
    text: str = Field(..., min_length=1, description="Texto do manuscrito (ou trecho) a analisar")
    job_type: str = Field(..., description=f"Tipo de análise: {', '.join(JOB_TYPES)}")
    priority: Literal["low", "normal", "high"] = Field("normal", description="Prioridade na fila do provider")
    manuscript_id: str = Field("", max_length=200, description="Identificador do manuscrito")
    provider_id: Optional[str] = Field(None, description="Fixa o provider; se ausente, o mais barato disponível")
    max_retries: Optional[int] = Field(None, ge=0, le=10, description="Sobrescreve a retry policy do provider")

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text não pode ser vazio")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "text": "Chapter 1. The knife was on the table...",
                "job_type": "plot_holes",
                "priority": "normal",
                "manuscript_id": "ms-001",
            }
        }
    )


class JobCreateResponse(BaseModel):
    """Resposta da criação de job."""
    job_id: str
    status: str
    provider_id: Optional[str] = None
    windows_total: int = 0
    estimated_cost_usd: float = 0.0


class JobError(BaseModel):
    kind: str
    message: str
    attempts: Optional[int] = None
    last_error: Optional[Dict[str, Any]] = None
    raw: Optional[str] = None


class JobUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class JobStatusResponse(BaseModel):
    """Estado atual de um job."""
    job_id: str
    job_type: str
    manuscript_id: str = ""
    priority: str
    status: str = Field(..., description="pending | running | succeeded | failed | cancelled")
    progress: int = Field(..., ge=0, le=100)
    provider_id: Optional[str] = None
    windows_total: int = 0
    windows_done: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[JobError] = None
    usage: JobUsage = Field(default_factory=JobUsage)
    estimated_cost_usd: float = 0.0
    cost_usd: float = 0.0
    created_at: float
    finished_at: Optional[float] = None


class ProviderHealthResponse(BaseModel):
    provider_id: str
    has_profile: bool
    current: int
    limit: int
    utilization: float
    recent_errors: int
    avg_latency_ms: float
    success_rate: float


class HealthResponse(BaseModel):
    """Snapshot de saúde dos providers."""
    status: str = Field(..., description="healthy | degraded | critical")
    overloaded: List[str] = Field(default_factory=list)
    missing_profiles: List[str] = Field(default_factory=list)
    taken_at: float
    providers: Dict[str, ProviderHealthResponse] = Field(default_factory=dict)
    budget: Optional[Dict[str, Any]] = None


class ReloadResponse(BaseModel):
    """Resultado do reload da tabela de providers."""
    providers_loaded: int
    provider_ids: List[str]
    version: int
