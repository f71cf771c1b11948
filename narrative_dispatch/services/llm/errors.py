"""
Taxonomia de erros do dispatch de análises LLM.

Cada erro expõe um `kind` estável (usado em logs, no HealthMonitor e na API)
e as flags `retryable` / `unrecoverable` que o Dispatcher e o AnalysisService
consultam para decidir entre retry, registrar a janela como ausente ou abortar
o job inteiro.
"""

from typing import Optional


class DispatchError(Exception):
    """Erro base do dispatch."""
    kind = "dispatch_error"
    retryable = False
    unrecoverable = False

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class UnknownProviderError(DispatchError):
    """Provider sem profile registrado."""
    kind = "unknown_provider"

    def __init__(self, provider_id: str):
        super().__init__(f"Provider '{provider_id}' não encontrado no registry")
        self.provider_id = provider_id


class UnknownJobTypeError(DispatchError):
    """Tipo de job sem schema/prompt registrado."""
    kind = "unknown_job_type"


class RateLimitedError(DispatchError):
    """Admissão local negada além do tempo máximo de espera."""
    kind = "rate_limited"

    def __init__(self, message: str, retry_after_ms: int = 0):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class UnauthorizedError(DispatchError):
    """Credencial inválida (401/403). Nunca faz retry."""
    kind = "unauthorized"
    unrecoverable = True


class MalformedResponseError(DispatchError):
    """Resposta não é JSON válido ou não bate com o schema do job. Nunca faz retry."""
    kind = "malformed"
    unrecoverable = True

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw
        # Tokens cobrados pela resposta inválida (TokenUsage), preenchido pelo Dispatcher
        self.usage = None

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.raw is not None:
            data["raw"] = self.raw[:2000]
        return data


class AttemptTimeoutError(DispatchError):
    """Timeout de uma tentativa individual."""
    kind = "timeout"
    retryable = True


class ProviderError(DispatchError):
    """Erro transitório do provider (5xx, conexão)."""
    kind = "provider_error"
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimitError(ProviderError):
    """Rate limit do lado do provider (429)."""


class ProviderBadRequestError(ProviderError):
    """Requisição rejeitada pelo provider (4xx que não é credencial nem 429)."""
    retryable = False


class ExhaustedRetriesError(DispatchError):
    """Tentativas esgotadas; carrega o último erro subjacente."""
    kind = "exhausted_retries"

    def __init__(self, provider_id: str, attempts: int, last_error: DispatchError):
        super().__init__(
            f"{provider_id}: {attempts} tentativas esgotadas "
            f"(último erro: {last_error.kind}: {last_error})"
        )
        self.provider_id = provider_id
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempts"] = self.attempts
        data["last_error"] = self.last_error.to_dict()
        return data


class JobTimeoutError(DispatchError):
    """Timeout do job inteiro (distinto do timeout de tentativa)."""
    kind = "job_timeout"


class JobCancelledError(DispatchError):
    """Job cancelado cooperativamente."""
    kind = "cancelled"


class BudgetExceededError(DispatchError):
    """Custo estimado excede o orçamento restante."""
    kind = "budget_exceeded"


class NoProviderAvailableError(DispatchError):
    """Nenhum provider habilitado comporta o job."""
    kind = "no_provider"


class JobNotFoundError(DispatchError):
    """Job inexistente ou já removido da memória."""
    kind = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' não encontrado")
        self.job_id = job_id
