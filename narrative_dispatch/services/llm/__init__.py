"""
Camada de dispatch de análises LLM.

Transforma um manuscrito de qualquer tamanho em uma sequência limitada de
chamadas aos providers, respeitando rate limit, concorrência, retry e custo
de cada provider, e consolida os resultados parciais em um único resultado.
"""

from .provider_registry import ProviderProfile, ProviderRegistry, RetryPolicy, TokenCost
from .rate_limiter import SlidingWindowRateLimiter
from .health_monitor import (
    FailureType,
    HealthMonitor,
    HealthSnapshot,
    SystemStatus,
    start_health_log,
    stop_health_log,
)
from .dispatcher import CallResult, DispatchRequest, Dispatcher, TokenUsage
from .provider_slots import LLMPriority, PrioritySlots
from .content_chunker import Window, chunk_scenes, chunk_text, estimate_tokens, fit_window_size, split
from .issue_consolidator import (
    ConsolidatedIssue,
    ConsolidationReport,
    RawIssue,
    WindowOutcome,
    consolidate,
    merge_issues,
)
from .cost_estimator import CostEstimator, ProviderSelection, ProviderSelector
from .budget import BudgetAlert, BudgetTracker
from .constants import JOB_TYPES, JobType, get_job_type
from .analysis_service import (
    AnalysisService,
    Job,
    JobRequest,
    JobStatus,
    build_analysis_service,
)
from .errors import (
    AttemptTimeoutError,
    BudgetExceededError,
    DispatchError,
    ExhaustedRetriesError,
    JobCancelledError,
    JobNotFoundError,
    JobTimeoutError,
    MalformedResponseError,
    NoProviderAvailableError,
    ProviderBadRequestError,
    ProviderError,
    ProviderRateLimitError,
    RateLimitedError,
    UnauthorizedError,
    UnknownJobTypeError,
    UnknownProviderError,
)

__all__ = [
    # Registry
    'ProviderProfile',
    'ProviderRegistry',
    'RetryPolicy',
    'TokenCost',

    # Rate limit / saúde
    'SlidingWindowRateLimiter',
    'HealthMonitor',
    'HealthSnapshot',
    'SystemStatus',
    'FailureType',
    'start_health_log',
    'stop_health_log',

    # Dispatch
    'Dispatcher',
    'DispatchRequest',
    'CallResult',
    'TokenUsage',
    'LLMPriority',
    'PrioritySlots',

    # Chunking
    'Window',
    'split',
    'chunk_text',
    'chunk_scenes',
    'estimate_tokens',
    'fit_window_size',

    # Consolidação
    'RawIssue',
    'ConsolidatedIssue',
    'WindowOutcome',
    'ConsolidationReport',
    'merge_issues',
    'consolidate',

    # Custo
    'CostEstimator',
    'ProviderSelector',
    'ProviderSelection',
    'BudgetTracker',
    'BudgetAlert',

    # Jobs
    'JOB_TYPES',
    'JobType',
    'get_job_type',
    'AnalysisService',
    'Job',
    'JobRequest',
    'JobStatus',
    'build_analysis_service',

    # Erros
    'DispatchError',
    'UnknownProviderError',
    'UnknownJobTypeError',
    'RateLimitedError',
    'UnauthorizedError',
    'MalformedResponseError',
    'AttemptTimeoutError',
    'ProviderError',
    'ProviderRateLimitError',
    'ProviderBadRequestError',
    'ExhaustedRetriesError',
    'JobTimeoutError',
    'JobCancelledError',
    'JobNotFoundError',
    'NoProviderAvailableError',
    'BudgetExceededError',
]
