"""
Orquestração de jobs de análise de manuscrito.

1 job = 1 texto = N janelas = 1 resultado consolidado.

Fluxo: submit → seleção de provider (ou provider fixado) → chunking se o
texto não couber em uma chamada → dispatch concorrente das janelas →
barreira de consolidação → estado final do job.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .budget import BudgetTracker
from .constants import JobType, get_job_type
from .content_chunker import (
    Window,
    chunk_text,
    estimate_tokens,
    fit_window_size,
)
from .cost_estimator import CostEstimator, ProviderSelector
from .dispatcher import CallResult, DispatchRequest, Dispatcher, TokenUsage
from .errors import (
    BudgetExceededError,
    DispatchError,
    ExhaustedRetriesError,
    JobCancelledError,
    JobNotFoundError,
    JobTimeoutError,
    MalformedResponseError,
    NoProviderAvailableError,
)
from .health_monitor import HealthMonitor
from .issue_consolidator import ConsolidationReport, WindowOutcome, consolidate
from .provider_registry import ProviderProfile, ProviderRegistry
from .provider_slots import LLMPriority
from .rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class JobRequest:
    text: str
    job_type: str
    priority: str = "normal"
    manuscript_id: str = ""
    provider_id: Optional[str] = None
    max_retries: Optional[int] = None


@dataclass
class JobPlan:
    """Decisões tomadas no submit: provider, janelas e orçamento de tokens."""
    job_type: JobType
    provider_id: str
    windows: List[Window]
    prompt_tokens: int
    completion_tokens: int
    estimated_cost: float
    max_retries: int
    timeout_s: float


@dataclass
class Job:
    id: str
    request: JobRequest
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    provider_id: Optional[str] = None
    windows_total: int = 0
    windows_done: int = 0
    result: Optional[dict] = None
    report: Optional[ConsolidationReport] = None
    error: Optional[DispatchError] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    estimated_cost: float = 0.0
    cost_usd: float = 0.0
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    _finished_mono: Optional[float] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "job_id": self.id,
            "job_type": self.request.job_type,
            "manuscript_id": self.request.manuscript_id,
            "priority": self.request.priority,
            "status": self.status.value,
            "progress": self.progress,
            "provider_id": self.provider_id,
            "windows_total": self.windows_total,
            "windows_done": self.windows_done,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
            },
            "estimated_cost_usd": round(self.estimated_cost, 6),
            "cost_usd": round(self.cost_usd, 6),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class AnalysisService:
    """
    Recebe jobs, executa em background e mantém o estado para polling.

    Apenas o serviço altera status/progress de um job em andamento. Jobs
    finalizados ficam em memória por retention_s e são removidos no próximo submit.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        health_monitor: HealthMonitor,
        dispatcher: Dispatcher,
        *,
        budget: Optional[BudgetTracker] = None,
        window_words: int = 2000,
        overlap_words: int = 200,
        job_timeout_s: float = 0.0,
        retention_s: float = 3600.0,
        similarity_threshold: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.health_monitor = health_monitor
        self.dispatcher = dispatcher
        self.estimator = CostEstimator(registry)
        self.selector = ProviderSelector(registry, self.estimator, health_monitor)
        self.budget = budget
        self.window_words = window_words
        self.overlap_words = overlap_words
        self.job_timeout_s = job_timeout_s
        self.retention_s = retention_s
        self.similarity_threshold = similarity_threshold
        self._clock = clock
        self._jobs: Dict[str, Job] = {}

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    def submit(self, request: JobRequest) -> str:
        """
        Valida, planeja e agenda o job. Precisa de um event loop rodando.

        Raises:
            UnknownJobTypeError, UnknownProviderError, NoProviderAvailableError,
            BudgetExceededError, ValueError (prioridade inválida)
        """
        job_type = get_job_type(request.job_type)
        try:
            priority = LLMPriority.from_label(request.priority)
        except KeyError:
            raise ValueError(f"Prioridade inválida: '{request.priority}' (use low, normal ou high)") from None

        self._evict_expired()

        plan = self._plan(request, job_type)
        if self.budget is not None and not self.budget.can_afford(plan.estimated_cost):
            raise BudgetExceededError(
                f"Custo estimado ${plan.estimated_cost:.4f} excede o orçamento restante "
                f"${self.budget.remaining:.4f}"
            )

        job = Job(
            id=str(uuid.uuid4()),
            request=request,
            provider_id=plan.provider_id,
            windows_total=len(plan.windows),
            estimated_cost=plan.estimated_cost,
        )
        self._jobs[job.id] = job
        job.task = asyncio.create_task(self.run_job(job, plan, priority))

        logger.info(
            f"📥 [JOB_SUBMIT] {job.id} type={request.job_type} manuscript={request.manuscript_id or '-'} "
            f"provider={plan.provider_id} janelas={len(plan.windows)} "
            f"custo_estimado=${plan.estimated_cost:.4f}"
        )
        return job.id

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def cancel(self, job_id: str) -> Job:
        """
        Cancelamento cooperativo: chamadas em andamento terminam e têm o
        resultado descartado; nenhuma nova tentativa é iniciada.
        """
        job = self.get(job_id)
        if job.status.is_terminal:
            return job
        job.stop_event.set()
        job.status = JobStatus.CANCELLED
        job.error = JobCancelledError(f"Job {job_id} cancelado")
        logger.info(f"🛑 [JOB_CANCEL] {job_id} (progress={job.progress}%)")
        return job

    async def wait(self, job_id: str) -> Job:
        """Aguarda o fim do processamento do job (inclusive das janelas pendentes)."""
        job = self.get(job_id)
        if job.task is not None:
            await job.task
        return job

    def list_jobs(self) -> List[Job]:
        return list(self._jobs.values())

    # ------------------------------------------------------------------
    # Planejamento
    # ------------------------------------------------------------------

    def _plan(self, request: JobRequest, job_type: JobType) -> JobPlan:
        text = request.text
        if job_type.max_words:
            words = text.split()
            if len(words) > job_type.max_words:
                text = " ".join(words[: job_type.max_words])

        completion_tokens = job_type.completion_tokens
        system_tokens = estimate_tokens(job_type.system_prompt)

        if request.provider_id:
            profile = self.registry.get(request.provider_id)
        else:
            profile = self._select_provider(text, job_type, system_tokens)

        window_words = fit_window_size(
            profile, completion_tokens, self.window_words, self.overlap_words
        )
        windows = chunk_text(text, window_words, self.overlap_words)

        prompt_tokens = sum(
            estimate_tokens(w.text, job_type.content_type) + system_tokens for w in windows
        )
        total_completion = completion_tokens * len(windows)
        max_retries = (
            request.max_retries if request.max_retries is not None else profile.retry_policy.max_retries
        )

        if self.job_timeout_s > 0:
            timeout_s = self.job_timeout_s
        else:
            timeout_s = profile.timeout_seconds * (max_retries + len(windows))

        return JobPlan(
            job_type=job_type,
            provider_id=profile.id,
            windows=windows,
            prompt_tokens=prompt_tokens,
            completion_tokens=total_completion,
            estimated_cost=self.estimator.estimate_cost(profile.id, prompt_tokens, total_completion),
            max_retries=max_retries,
            timeout_s=timeout_s,
        )

    def _select_provider(self, text: str, job_type: JobType, system_tokens: int) -> ProviderProfile:
        first_window = " ".join(text.split()[: self.window_words])
        prompt_tokens = estimate_tokens(first_window, job_type.content_type) + system_tokens
        selection = self.selector.select(prompt_tokens, job_type.completion_tokens)
        if selection is None:
            raise NoProviderAvailableError(
                f"Nenhum provider disponível para {prompt_tokens + job_type.completion_tokens:,} tokens"
            )
        return self.registry.get(selection.provider)

    # ------------------------------------------------------------------
    # Execução
    # ------------------------------------------------------------------

    async def run_job(self, job: Job, plan: JobPlan, priority: LLMPriority = LLMPriority.NORMAL) -> None:
        """Executa todas as janelas e finaliza o job. Não levanta exceção."""
        if job.status == JobStatus.CANCELLED:
            return
        job.status = JobStatus.RUNNING
        start_ts = time.perf_counter()
        first_unrecoverable: List[DispatchError] = []
        window_errors: Dict[int, DispatchError] = {}

        try:
            tasks = [
                asyncio.create_task(
                    self._run_window(job, plan, window, priority, first_unrecoverable, window_errors)
                )
                for window in plan.windows
            ]
            for task in tasks:
                task.add_done_callback(_log_task_exception)

            done, pending = await asyncio.wait(tasks, timeout=plan.timeout_s)

            if pending:
                # Janelas pendentes terminam sozinhas; resultados descartados
                job.stop_event.set()
                self._finish(job, JobStatus.FAILED, error=JobTimeoutError(
                    f"Job {job.id} excedeu {plan.timeout_s:.0f}s "
                    f"({len(done)}/{len(tasks)} janelas concluídas)"
                ))
                await asyncio.wait(pending)
                return

            outcomes = [self._outcome_from_task(task, index, window_errors) for index, task in enumerate(tasks)]

            if job.status == JobStatus.CANCELLED:
                self._finish(job, JobStatus.CANCELLED)
                return

            if first_unrecoverable:
                self._finish(job, JobStatus.FAILED, error=first_unrecoverable[0])
                return

            report = consolidate(outcomes, self.similarity_threshold)
            job.report = report

            if report.windows_total and report.windows_failed == report.windows_total:
                error = window_errors.get(report.failed_windows[0]) or ExhaustedRetriesError(
                    plan.provider_id, 0, DispatchError("todas as janelas falharam")
                )
                self._finish(job, JobStatus.FAILED, error=error)
                return

            job.result = report.to_dict()
            job.result["partial"] = not report.complete
            self._finish(job, JobStatus.SUCCEEDED)

        except Exception as e:
            logger.error(f"❌ [JOB_ERROR] {job.id}: {type(e).__name__}: {e}", exc_info=True)
            job.stop_event.set()
            self._finish(job, JobStatus.FAILED, error=DispatchError(f"Erro interno: {e}"))

        finally:
            self._charge(job)
            duration = time.perf_counter() - start_ts
            logger.info(
                f"🏁 [JOB_DONE] {job.id} status={job.status.value} "
                f"janelas={job.windows_done}/{job.windows_total} "
                f"tokens={job.usage.total_tokens:,} custo=${job.cost_usd:.4f} em {duration:.1f}s"
            )

    async def _run_window(
        self,
        job: Job,
        plan: JobPlan,
        window: Window,
        priority: LLMPriority,
        first_unrecoverable: List[DispatchError],
        window_errors: Dict[int, DispatchError],
    ) -> CallResult:
        request = DispatchRequest(
            system_prompt=plan.job_type.system_prompt,
            user_prompt=window.text,
            schema=plan.job_type.schema,
            max_tokens=plan.job_type.completion_tokens,
            priority=priority,
            max_retries=plan.max_retries,
            cancel_event=job.stop_event,
            label=f"[{job.id[:8]} w{window.index}]",
        )

        try:
            result = await self.dispatcher.call(plan.provider_id, request)
            job.usage.add(result.usage)
            return result

        except JobCancelledError as e:
            window_errors[window.index] = e
            return CallResult.failure(e)

        except DispatchError as e:
            window_errors[window.index] = e
            if isinstance(e, MalformedResponseError) and e.usage is not None:
                job.usage.add(e.usage)
            if e.unrecoverable and not first_unrecoverable:
                first_unrecoverable.append(e)
                job.stop_event.set()
                logger.error(
                    f"❌ [JOB_ABORT] {job.id}: janela {window.index} falhou com {e.kind}, "
                    f"interrompendo janelas restantes"
                )
            else:
                logger.warning(f"⚠️ [WINDOW_FAILED] {job.id} janela {window.index}: {e.kind}: {e}")
            return CallResult.failure(e)

        finally:
            job.windows_done += 1
            if not job.status.is_terminal and job.windows_total:
                job.progress = min(99, int(job.windows_done * 100 / job.windows_total))

    def _outcome_from_task(
        self, task: asyncio.Task, index: int, window_errors: Dict[int, DispatchError]
    ) -> WindowOutcome:
        if task.cancelled():
            return WindowOutcome(window_index=index, error_kind="cancelled")
        exc = task.exception()
        if exc is not None:
            window_errors[index] = DispatchError(f"{type(exc).__name__}: {exc}")
            return WindowOutcome(window_index=index, error_kind=DispatchError.kind)
        result: CallResult = task.result()
        if result.success:
            return WindowOutcome(window_index=index, payload=result.payload)
        return WindowOutcome(window_index=index, error_kind=result.error_kind)

    def _finish(self, job: Job, status: JobStatus, error: Optional[DispatchError] = None) -> None:
        if job.status == JobStatus.CANCELLED and status != JobStatus.CANCELLED:
            return
        job.status = status
        if error is not None:
            job.error = error
        if status != JobStatus.SUCCEEDED:
            job.result = None
        job.progress = 100
        job.finished_at = time.time()
        job._finished_mono = self._clock()

        if status == JobStatus.SUCCEEDED and job.report and not job.report.complete:
            logger.warning(
                f"⚠️ [JOB_PARTIAL] {job.id}: {job.report.windows_failed}/{job.report.windows_total} "
                f"janelas ausentes"
            )
        elif status == JobStatus.FAILED:
            logger.error(f"❌ [JOB_FAILED] {job.id}: {job.error.kind}: {job.error}")

    def _charge(self, job: Job) -> None:
        if job.provider_id is None or job.usage.total_tokens == 0:
            return
        job.cost_usd = self.estimator.estimate_cost(
            job.provider_id, job.usage.prompt_tokens, job.usage.completion_tokens
        )
        if self.budget is not None:
            self.budget.charge(
                job.provider_id,
                job.cost_usd,
                job_id=job.id,
                prompt_tokens=job.usage.prompt_tokens,
                completion_tokens=job.usage.completion_tokens,
            )

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job._finished_mono is not None and now - job._finished_mono > self.retention_s
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug(f"AnalysisService: {len(expired)} jobs removidos da memória")


def _log_task_exception(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"❌ [WINDOW_ERROR] {type(exc).__name__}: {exc}", exc_info=exc)


def build_analysis_service(settings) -> AnalysisService:
    """Monta o grafo de componentes a partir das Settings."""
    registry = ProviderRegistry.from_file(settings.PROVIDERS_FILE)
    rate_limiter = SlidingWindowRateLimiter(registry, window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS)
    health_monitor = HealthMonitor(
        registry,
        rate_limiter,
        utilization_threshold=settings.HEALTH_UTILIZATION_THRESHOLD,
        error_window_seconds=settings.HEALTH_ERROR_WINDOW_SECONDS,
    )
    dispatcher = Dispatcher(
        registry,
        rate_limiter,
        health_monitor,
        max_admission_wait_s=settings.MAX_ADMISSION_WAIT_SECONDS,
    )
    return AnalysisService(
        registry,
        rate_limiter,
        health_monitor,
        dispatcher,
        budget=BudgetTracker(settings.BUDGET_USD),
        window_words=settings.DEFAULT_WINDOW_WORDS,
        overlap_words=settings.DEFAULT_OVERLAP_WORDS,
        job_timeout_s=settings.JOB_TIMEOUT_SECONDS,
        retention_s=settings.JOB_RETENTION_SECONDS,
    )
