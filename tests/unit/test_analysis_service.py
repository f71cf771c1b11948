"""
Testes do AnalysisService: jobs completos com provider falso.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from openai import AuthenticationError, InternalServerError

from narrative_dispatch.services.llm.analysis_service import (
    AnalysisService,
    JobRequest,
    JobStatus,
)
from narrative_dispatch.services.llm.budget import BudgetTracker
from narrative_dispatch.services.llm.dispatcher import Dispatcher
from narrative_dispatch.services.llm.errors import (
    BudgetExceededError,
    JobNotFoundError,
    NoProviderAvailableError,
    UnknownJobTypeError,
    UnknownProviderError,
)
from narrative_dispatch.services.llm.health_monitor import HealthMonitor
from narrative_dispatch.services.llm.provider_registry import ProviderRegistry
from narrative_dispatch.services.llm.rate_limiter import SlidingWindowRateLimiter
from tests.helpers import (
    PLOT_HOLES_EMPTY,
    FakeClock,
    FakeSleep,
    api_status_error,
    make_client,
    make_completion,
    make_profile,
)

KNIFE_HOLE = {
    "plotHoles": [{
        "type": "object",
        "severity": "major",
        "description": "The knife vanishes between the kitchen scene and the chase",
        "affectedScenes": ["ch1-s3"],
    }]
}


class RecordingRateLimiter(SlidingWindowRateLimiter):
    """Registra o instante de cada admissão."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.admitted_at = []

    def try_admit(self, provider_id):
        admitted, retry_after_ms = super().try_admit(provider_id)
        if admitted:
            self.admitted_at.append(self._clock())
        return admitted, retry_after_ms


def _words(count, prefix="w"):
    return " ".join(f"{prefix}{i}" for i in range(count))


def _user_prompt(call_kwargs):
    return call_kwargs["messages"][1]["content"]


class TestAnalysisService:
    """Testes para AnalysisService."""

    def setup_method(self):
        self.clock = FakeClock()
        self.sleep = FakeSleep(self.clock)
        self.create = AsyncMock(return_value=make_completion(PLOT_HOLES_EMPTY))

    def _service(self, profiles=None, **kwargs):
        self.registry = ProviderRegistry(profiles or [make_profile("p", rpm=60, concurrent=3)])
        self.limiter = RecordingRateLimiter(self.registry, clock=self.clock, sleep=self.sleep)
        self.health = HealthMonitor(self.registry, self.limiter, clock=self.clock)
        client = make_client(self.create)
        self.dispatcher = Dispatcher(
            self.registry,
            self.limiter,
            self.health,
            client_factory=lambda profile: client,
            sleep=self.sleep,
        )
        kwargs.setdefault("clock", self.clock)
        return AnalysisService(self.registry, self.limiter, self.health, self.dispatcher, **kwargs)

    async def _run(self, service, **request_kwargs):
        request_kwargs.setdefault("job_type", "plot_holes")
        job_id = service.submit(JobRequest(**request_kwargs))
        return await service.wait(job_id)

    @pytest.mark.asyncio
    async def test_full_manuscript_250k_words(self):
        """
        250.000 palavras, janelas 2000/200, provider a 60 rpm.

        139 janelas, nunca mais de 60 admissões em 60s, e a issue que cai na
        sobreposição das janelas 0 e 1 aparece uma vez só.
        """
        words = ["word"] * 250_000
        words[1850] = "KNIFEMARKER"

        async def create(**kwargs):
            if "KNIFEMARKER" in _user_prompt(kwargs):
                return make_completion(KNIFE_HOLE)
            return make_completion(PLOT_HOLES_EMPTY)

        self.create.side_effect = create
        service = self._service()

        job = await self._run(service, text=" ".join(words), provider_id="p", manuscript_id="ms-1")

        assert job.status == JobStatus.SUCCEEDED
        assert job.progress == 100
        assert job.windows_total == 139
        assert job.windows_done == 139
        assert self.create.await_count == 139

        times = sorted(self.limiter.admitted_at)
        assert len(times) == 139
        for earlier, later in zip(times, times[60:]):
            assert later - earlier >= 60 - 1e-6

        issues = job.result["issues"]
        assert len(issues) == 1
        assert issues[0]["window_ids"] == [0, 1]
        assert issues[0]["occurrences"] == 2
        assert job.result["partial"] is False
        assert job.result["windows_total"] == 139

    @pytest.mark.asyncio
    async def test_short_text_single_window(self):
        service = self._service()

        job = await self._run(service, text=_words(50))

        assert job.status == JobStatus.SUCCEEDED
        assert job.windows_total == 1
        assert job.provider_id == "p"
        assert job.result["complete"] is True
        assert job.usage.prompt_tokens == 100
        assert job.usage.completion_tokens == 50

    @pytest.mark.asyncio
    async def test_opening_analysis_truncates_text(self):
        """Análise de abertura só envia as primeiras 1250 palavras."""
        self.create.return_value = make_completion(
            {"hookType": "action", "hookStrength": 72, "agentReadinessScore": 65}
        )
        service = self._service()

        job = await self._run(service, text=_words(5000), job_type="opening_analysis")

        assert job.status == JobStatus.SUCCEEDED
        assert job.windows_total == 1
        sent = _user_prompt(self.create.await_args.kwargs).split()
        assert len(sent) == 1250
        assert sent[-1] == "w1249"
        assert job.result["payloads"][0]["hook_strength"] == 72

    @pytest.mark.asyncio
    async def test_unknown_job_type(self):
        service = self._service()
        with pytest.raises(UnknownJobTypeError):
            service.submit(JobRequest(text="abc", job_type="sentiment"))

    @pytest.mark.asyncio
    async def test_unknown_pinned_provider(self):
        service = self._service()
        with pytest.raises(UnknownProviderError):
            service.submit(JobRequest(text="abc", job_type="plot_holes", provider_id="nope"))

    @pytest.mark.asyncio
    async def test_invalid_priority(self):
        service = self._service()
        with pytest.raises(ValueError):
            service.submit(JobRequest(text="abc", job_type="plot_holes", priority="urgent"))

    @pytest.mark.asyncio
    async def test_no_provider_available(self):
        """Só provider local habilitado: nada para selecionar."""
        service = self._service([make_profile("local", local=True)])
        with pytest.raises(NoProviderAvailableError):
            service.submit(JobRequest(text="abc", job_type="plot_holes"))

    @pytest.mark.asyncio
    async def test_cheapest_provider_selected(self):
        service = self._service([
            make_profile("pricey", prompt_cost=0.00003, completion_cost=0.00006),
            make_profile("cheap", prompt_cost=0.0000005, completion_cost=0.0000015),
        ])

        job = await self._run(service, text=_words(100))

        assert job.provider_id == "cheap"

    @pytest.mark.asyncio
    async def test_budget_exceeded_rejected_at_submit(self):
        service = self._service(budget=BudgetTracker(0.0001))

        with pytest.raises(BudgetExceededError):
            service.submit(JobRequest(text=_words(100), job_type="plot_holes"))

        self.create.assert_not_awaited()
        assert service.list_jobs() == []

    @pytest.mark.asyncio
    async def test_budget_charged_with_actual_usage(self):
        budget = BudgetTracker(10.0)
        service = self._service(budget=budget)

        job = await self._run(service, text=_words(100))

        expected = 100 * 0.00001 + 50 * 0.00003
        assert job.cost_usd == pytest.approx(expected)
        assert budget.used == pytest.approx(expected)
        assert budget.spending_by_provider() == {"p": pytest.approx(expected)}

    @pytest.mark.asyncio
    async def test_partial_result_when_some_windows_fail(self):
        """Janela com erro transitório esgotado fica ausente; job termina com resultado parcial."""
        async def create(**kwargs):
            if "w24" in _user_prompt(kwargs).split():
                raise api_status_error(InternalServerError, 500)
            return make_completion(PLOT_HOLES_EMPTY)

        self.create.side_effect = create
        service = self._service(window_words=10, overlap_words=2)

        job = await self._run(service, text=_words(25), max_retries=0)

        assert job.status == JobStatus.SUCCEEDED
        assert job.windows_total == 3
        assert job.result["partial"] is True
        assert job.result["failed_windows"] == [2]
        assert job.result["windows_failed"] == 1
        assert job.error is None

    @pytest.mark.asyncio
    async def test_all_windows_failed(self):
        self.create.side_effect = api_status_error(InternalServerError, 500)
        service = self._service(window_words=10, overlap_words=2)

        job = await self._run(service, text=_words(25), max_retries=0)

        assert job.status == JobStatus.FAILED
        assert job.result is None
        assert job.error.kind == "exhausted_retries"
        assert job.to_dict()["error"]["last_error"]["kind"] == "provider_error"

    @pytest.mark.asyncio
    async def test_unauthorized_aborts_remaining_windows(self):
        """Credencial rejeitada interrompe o job; janelas seguintes não chamam o provider."""
        self.create.side_effect = api_status_error(AuthenticationError, 401)
        service = self._service([make_profile("p", concurrent=1)], window_words=10, overlap_words=2)

        job = await self._run(service, text=_words(25))

        assert job.status == JobStatus.FAILED
        assert job.error.kind == "unauthorized"
        assert self.create.await_count == 1
        assert job.windows_done == 3

    @pytest.mark.asyncio
    async def test_malformed_response_fails_job(self):
        self.create.return_value = make_completion('{"unexpected": true}')
        service = self._service()

        job = await self._run(service, text=_words(30))

        assert job.status == JobStatus.FAILED
        assert job.error.kind == "malformed"

    @pytest.mark.asyncio
    async def test_malformed_response_tokens_are_billed(self):
        """Tokens de resposta inválida entram no usage do job e no orçamento."""
        self.create.return_value = make_completion(
            '{"unexpected": true}', prompt_tokens=400, completion_tokens=80
        )
        budget = BudgetTracker(10.0)
        service = self._service(budget=budget)

        job = await self._run(service, text=_words(30))

        assert job.status == JobStatus.FAILED
        assert job.usage.prompt_tokens == 400
        assert job.usage.completion_tokens == 80
        assert budget.used == pytest.approx(400 * 0.00001 + 80 * 0.00003)

    @pytest.mark.asyncio
    async def test_cancel_running_job(self):
        gate = asyncio.Event()

        async def create(**kwargs):
            await gate.wait()
            return make_completion(PLOT_HOLES_EMPTY)

        self.create.side_effect = create
        service = self._service([make_profile("p", concurrent=1)], window_words=10, overlap_words=2)

        job_id = service.submit(JobRequest(text=_words(25), job_type="plot_holes"))
        await asyncio.sleep(0.01)

        job = service.cancel(job_id)
        assert job.status == JobStatus.CANCELLED

        gate.set()
        job = await service.wait(job_id)

        assert job.status == JobStatus.CANCELLED
        assert job.result is None
        assert job.error.kind == "cancelled"
        assert self.create.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_noop(self):
        service = self._service()
        job = await self._run(service, text=_words(10))

        assert service.cancel(job.id).status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_job_timeout(self):
        """Timeout do job é distinto do timeout por tentativa."""
        gate = asyncio.Event()

        async def create(**kwargs):
            await gate.wait()
            return make_completion(PLOT_HOLES_EMPTY)

        self.create.side_effect = create
        service = self._service(job_timeout_s=0.05)

        job_id = service.submit(JobRequest(text=_words(30), job_type="plot_holes"))
        await asyncio.sleep(0.2)

        job = service.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.kind == "job_timeout"

        gate.set()
        job = await service.wait(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.kind == "job_timeout"
        assert job.result is None

    @pytest.mark.asyncio
    async def test_get_unknown_job(self):
        service = self._service()
        with pytest.raises(JobNotFoundError):
            service.get("missing")

    @pytest.mark.asyncio
    async def test_finished_jobs_evicted_after_retention(self):
        service = self._service(retention_s=10)
        job = await self._run(service, text=_words(10))

        self.clock.advance(11)
        await self._run(service, text=_words(10))

        with pytest.raises(JobNotFoundError):
            service.get(job.id)
        assert len(service.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_high_priority_window_served_first(self):
        """Com o provider ocupado, job HIGH passa na frente de job LOW."""
        gate = asyncio.Event()
        order = []

        async def create(**kwargs):
            prompt = _user_prompt(kwargs)
            if prompt.startswith("blocker"):
                await gate.wait()
            order.append(prompt.split()[0])
            return make_completion(PLOT_HOLES_EMPTY)

        self.create.side_effect = create
        service = self._service([make_profile("p", concurrent=1)])

        blocker = service.submit(JobRequest(text="blocker text", job_type="plot_holes"))
        await asyncio.sleep(0.01)
        low = service.submit(JobRequest(text="low text", job_type="plot_holes", priority="low"))
        high = service.submit(JobRequest(text="high text", job_type="plot_holes", priority="high"))
        await asyncio.sleep(0.01)

        gate.set()
        for job_id in (blocker, low, high):
            await service.wait(job_id)

        assert order == ["blocker", "high", "low"]

    @pytest.mark.asyncio
    async def test_job_to_dict(self):
        service = self._service()
        job = await self._run(service, text=_words(10), manuscript_id="ms-9")

        data = job.to_dict()

        assert data["status"] == "succeeded"
        assert data["manuscript_id"] == "ms-9"
        assert data["usage"] == {"prompt_tokens": 100, "completion_tokens": 50}
        assert data["error"] is None
        assert data["result"]["issues"] == []
