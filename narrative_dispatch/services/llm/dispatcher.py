"""
Dispatcher de chamadas LLM.

Uma chamada = admissão no rate limiter + requisição HTTP com timeout por
tentativa + validação do JSON contra o schema do job, com retry iterativo
(tenacity) para falhas transitórias. Toda tentativa é reportada ao
HealthMonitor.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from narrative_dispatch.schemas.analysis import AnalysisResult
from .errors import (
    AttemptTimeoutError,
    DispatchError,
    ExhaustedRetriesError,
    JobCancelledError,
    MalformedResponseError,
    ProviderBadRequestError,
    ProviderError,
    ProviderRateLimitError,
    UnauthorizedError,
)
from .health_monitor import FailureType, HealthMonitor
from .provider_registry import ProviderProfile, ProviderRegistry
from .provider_slots import LLMPriority, PrioritySlots
from .rate_limiter import SlidingWindowRateLimiter
from .response_validator import validate_response

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderProfile], AsyncOpenAI]


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class DispatchRequest:
    """Uma requisição ao provider: prompts, schema esperado e orçamento."""
    system_prompt: str
    user_prompt: str
    schema: Type[AnalysisResult]
    max_tokens: int = 1000
    priority: LLMPriority = LLMPriority.NORMAL
    max_retries: Optional[int] = None  # None = usa retry_policy do profile
    temperature: float = 0.0
    cancel_event: Optional[asyncio.Event] = None
    label: str = ""

    @property
    def messages(self) -> List[dict]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_prompt},
        ]


@dataclass
class CallResult:
    success: bool
    payload: Optional[AnalysisResult] = None
    latency_ms: float = 0.0
    usage: TokenUsage = field(default_factory=TokenUsage)
    attempts: int = 0
    error_kind: Optional[str] = None
    error: Optional[DispatchError] = None

    @classmethod
    def failure(cls, error: DispatchError, attempts: int = 0, latency_ms: float = 0.0) -> "CallResult":
        if isinstance(error, ExhaustedRetriesError):
            attempts = attempts or error.attempts
        return cls(success=False, latency_ms=latency_ms, attempts=attempts, error_kind=error.kind, error=error)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DispatchError) and exc.retryable


def _failure_type(error: DispatchError) -> FailureType:
    if isinstance(error, AttemptTimeoutError):
        return FailureType.TIMEOUT
    if isinstance(error, ProviderRateLimitError):
        return FailureType.RATE_LIMIT
    if isinstance(error, UnauthorizedError):
        return FailureType.UNAUTHORIZED
    if isinstance(error, MalformedResponseError):
        return FailureType.MALFORMED
    if isinstance(error, ProviderBadRequestError):
        return FailureType.BAD_REQUEST
    return FailureType.ERROR


def default_client_factory(profile: ProviderProfile) -> AsyncOpenAI:
    """Cliente OpenAI-compatible por profile; retries do SDK desligados."""
    api_key = os.getenv(profile.api_key_env, "") if profile.api_key_env else ""
    if not api_key:
        if not profile.local:
            raise UnauthorizedError(
                f"{profile.id}: API key ausente (variável {profile.api_key_env or '<não configurada>'})"
            )
        api_key = "local"
    return AsyncOpenAI(
        api_key=api_key,
        base_url=profile.base_url,
        timeout=profile.timeout_seconds,
        max_retries=0,
    )


class Dispatcher:
    """
    Executa chamadas aos providers registrados.

    Concorrência por provider limitada a max_concurrent (slots com fila por
    prioridade). Espera por admissão, HTTP e backoff nunca bloqueiam outros
    providers.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        health_monitor: HealthMonitor,
        *,
        max_admission_wait_s: float = 120.0,
        client_factory: ClientFactory = default_client_factory,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._health = health_monitor
        self._max_admission_wait_s = max_admission_wait_s
        self._client_factory = client_factory
        self._sleep = sleep
        self._clients: Dict[str, tuple] = {}
        self._slots: Dict[str, PrioritySlots] = {}

    def _client_for(self, profile: ProviderProfile) -> AsyncOpenAI:
        cached = self._clients.get(profile.id)
        if cached is not None and cached[0] == profile:
            return cached[1]
        client = self._client_factory(profile)
        self._clients[profile.id] = (profile, client)
        logger.debug(f"Dispatcher: cliente criado para {profile.id} (model={profile.model})")
        return client

    def _slots_for(self, profile: ProviderProfile) -> PrioritySlots:
        slots = self._slots.get(profile.id)
        if slots is None:
            slots = self._slots.setdefault(profile.id, PrioritySlots(profile.max_concurrent))
        elif slots.limit != profile.max_concurrent:
            slots.set_limit(profile.max_concurrent)
        return slots

    async def call(self, provider_id: str, request: DispatchRequest) -> CallResult:
        """
        Executa a requisição no provider com retry.

        Returns:
            CallResult de sucesso

        Raises:
            RateLimitedError: admissão local excedeu a espera máxima
            UnauthorizedError: credencial rejeitada (sem retry)
            MalformedResponseError: resposta fora do schema (sem retry)
            ProviderBadRequestError: requisição rejeitada pelo provider (sem retry)
            ExhaustedRetriesError: tentativas esgotadas em falhas transitórias
            JobCancelledError: cancel_event setado antes de uma tentativa
        """
        profile = self._registry.get(provider_id)
        policy = profile.retry_policy
        max_retries = policy.max_retries if request.max_retries is None else request.max_retries
        ctx = f"{request.label} " if request.label else ""

        usage = TokenUsage()
        attempts = 0
        start_ts = time.perf_counter()

        logger.debug(f"🚀 [DISPATCH_START] {ctx}{provider_id}: {len(request.user_prompt):,} chars")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=lambda retry_state: policy.delay_seconds(retry_state.attempt_number),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry(provider_id, max_retries, ctx),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    payload, attempt_usage = await self._attempt(provider_id, request)
                    usage.add(attempt_usage)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                f"❌ [DISPATCH_EXHAUSTED] {ctx}{provider_id}: {attempts} tentativas "
                f"(último erro: {type(last_error).__name__}: {last_error})"
            )
            raise ExhaustedRetriesError(provider_id, attempts, last_error) from last_error

        latency_ms = (time.perf_counter() - start_ts) * 1000
        logger.debug(
            f"✅ [DISPATCH_OK] {ctx}{provider_id}: {attempts} tentativa(s), "
            f"{usage.total_tokens} tokens em {latency_ms:.0f}ms"
        )
        return CallResult(
            success=True,
            payload=payload,
            latency_ms=latency_ms,
            usage=usage,
            attempts=attempts,
        )

    def _log_retry(self, provider_id: str, max_retries: int, ctx: str):
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.info(
                f"🔄 [DISPATCH_RETRY] {ctx}{provider_id} retry {retry_state.attempt_number}/{max_retries} "
                f"após {delay:.1f}s ({type(error).__name__})"
            )
        return before_sleep

    async def _attempt(self, provider_id: str, request: DispatchRequest):
        if request.cancel_event is not None and request.cancel_event.is_set():
            raise JobCancelledError(f"{provider_id}: cancelado antes da tentativa")

        # Profile relido a cada tentativa para refletir reloads
        profile = self._registry.get(provider_id)
        slots = self._slots_for(profile)

        async with slots.slot(request.priority):
            if request.cancel_event is not None and request.cancel_event.is_set():
                raise JobCancelledError(f"{provider_id}: cancelado antes da tentativa")

            await self._rate_limiter.acquire(
                provider_id, self._max_admission_wait_s, cancel_event=request.cancel_event
            )
            if request.cancel_event is not None and request.cancel_event.is_set():
                raise JobCancelledError(f"{provider_id}: cancelado após admissão")
            client = self._client_for(profile)

            start_time = time.perf_counter()
            try:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=profile.model,
                        messages=request.messages,
                        temperature=request.temperature,
                        max_tokens=request.max_tokens,
                        response_format={"type": "json_object"},
                    ),
                    timeout=profile.timeout_seconds,
                )
            except (asyncio.TimeoutError, APITimeoutError) as e:
                raise self._fail(profile, start_time, AttemptTimeoutError(
                    f"{provider_id}: timeout após {profile.timeout_seconds:.0f}s"
                ), e)
            except (AuthenticationError, PermissionDeniedError) as e:
                raise self._fail(profile, start_time, UnauthorizedError(
                    f"{provider_id}: credencial rejeitada ({e.status_code})"
                ), e)
            except RateLimitError as e:
                raise self._fail(profile, start_time, ProviderRateLimitError(
                    f"{provider_id}: rate limit do provider", status_code=e.status_code
                ), e)
            except APIStatusError as e:
                if e.status_code >= 500:
                    error = ProviderError(f"{provider_id}: erro {e.status_code}", status_code=e.status_code)
                else:
                    error = ProviderBadRequestError(
                        f"{provider_id}: requisição rejeitada ({e.status_code}): {e.message}",
                        status_code=e.status_code,
                    )
                raise self._fail(profile, start_time, error, e)
            except APIConnectionError as e:
                raise self._fail(profile, start_time, ProviderError(f"{provider_id}: falha de conexão: {e}"), e)
            except APIError as e:
                raise self._fail(profile, start_time, ProviderError(f"{provider_id}: {type(e).__name__}: {e}"), e)

            latency_ms = (time.perf_counter() - start_time) * 1000

            # Tokens são cobrados pelo provider mesmo quando a resposta é inválida
            usage = TokenUsage()
            if response.usage is not None:
                usage = TokenUsage(
                    prompt_tokens=response.usage.prompt_tokens or 0,
                    completion_tokens=response.usage.completion_tokens or 0,
                )

            content = None
            if response.choices:
                content = response.choices[0].message.content
            try:
                payload = validate_response(content, request.schema)
            except MalformedResponseError as e:
                e.usage = usage
                self._health.record_outcome(provider_id, False, latency_ms, FailureType.MALFORMED)
                logger.error(f"❌ [DISPATCH_MALFORMED] {provider_id}: {e}")
                raise

            self._health.record_outcome(provider_id, True, latency_ms)
            return payload, usage

    def _fail(self, profile: ProviderProfile, start_time: float, error: DispatchError, cause: Exception) -> DispatchError:
        """Registra a falha no HealthMonitor e devolve o erro tipado para raise."""
        latency_ms = (time.perf_counter() - start_time) * 1000
        self._health.record_outcome(profile.id, False, latency_ms, _failure_type(error))
        log = logger.error if not error.retryable else logger.warning
        log(f"⚠️ [DISPATCH_FAIL] {profile.id} {error.kind.upper()} após {latency_ms:.0f}ms: {cause}")
        error.__cause__ = cause
        return error

    def get_status(self) -> Dict[str, Any]:
        return {
            pid: {"limit": slots.limit, "in_use": slots.in_use, "waiting": slots.waiting}
            for pid, slots in self._slots.items()
        }
