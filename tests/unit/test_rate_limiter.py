"""
Testes unitários para o Rate Limiter (janela deslizante).
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from narrative_dispatch.services.llm.errors import (
    JobCancelledError,
    RateLimitedError,
    UnknownProviderError,
)
from narrative_dispatch.services.llm.provider_registry import ProviderRegistry
from narrative_dispatch.services.llm.rate_limiter import SlidingWindowRateLimiter
from tests.helpers import FakeClock, FakeSleep, make_profile


class TestSlidingWindowRateLimiter:
    """Testes para SlidingWindowRateLimiter."""

    def setup_method(self):
        self.clock = FakeClock()
        self.sleep = FakeSleep(self.clock)
        self.registry = ProviderRegistry([
            make_profile("fast", rpm=60),
            make_profile("slow", rpm=2),
        ])
        self.limiter = SlidingWindowRateLimiter(self.registry, clock=self.clock, sleep=self.sleep)

    def test_burst_admits_exactly_limit(self):
        """Burst de 2x o limite admite exatamente o limite."""
        results = [self.limiter.try_admit("fast")[0] for _ in range(120)]

        assert results.count(True) == 60
        assert all(results[:60])
        assert not any(results[60:])

    def test_rest_admitted_only_after_window_slides(self):
        """Negados só entram quando o timestamp mais antigo sai da janela."""
        for _ in range(60):
            self.limiter.try_admit("fast")

        self.clock.advance(59.9)
        assert self.limiter.try_admit("fast")[0] is False

        self.clock.advance(0.5)
        admitted = [self.limiter.try_admit("fast")[0] for _ in range(60)]
        assert admitted.count(True) == 60

    def test_retry_after_until_oldest_leaves(self):
        """retry_after_ms deve ser o tempo até o timestamp mais antigo sair da janela."""
        assert self.limiter.try_admit("slow") == (True, 0)
        self.clock.advance(10)
        assert self.limiter.try_admit("slow") == (True, 0)
        self.clock.advance(10)

        admitted, retry_after_ms = self.limiter.try_admit("slow")
        assert admitted is False
        assert retry_after_ms == 40_000

        self.clock.advance(40)
        assert self.limiter.try_admit("slow")[0] is True

    def test_sliding_not_fixed_bucket(self):
        """Admissões no fim de uma janela contam no começo da seguinte."""
        self.clock.advance(59)
        assert self.limiter.try_admit("slow")[0]
        assert self.limiter.try_admit("slow")[0]

        self.clock.advance(2)  # t=61: em bucket fixo estaria zerado
        assert self.limiter.try_admit("slow")[0] is False

    def test_providers_are_independent(self):
        """Limite de um provider não afeta outro."""
        for _ in range(2):
            self.limiter.try_admit("slow")

        assert self.limiter.try_admit("slow")[0] is False
        assert self.limiter.try_admit("fast")[0] is True

    def test_unknown_provider_raises(self):
        """Provider sem profile deve levantar UnknownProviderError."""
        with pytest.raises(UnknownProviderError):
            self.limiter.try_admit("nope")
        with pytest.raises(UnknownProviderError):
            self.limiter.get_usage("nope")

    def test_get_usage(self):
        """get_usage retorna (admissões na janela, limite)."""
        self.limiter.try_admit("fast")
        self.limiter.try_admit("fast")
        assert self.limiter.get_usage("fast") == (2, 60)

        self.clock.advance(61)
        assert self.limiter.get_usage("fast") == (0, 60)

    def test_reset_single_provider(self):
        """reset(provider) limpa só aquele provider."""
        self.limiter.try_admit("fast")
        self.limiter.try_admit("slow")

        self.limiter.reset("slow")

        assert self.limiter.get_usage("slow") == (0, 2)
        assert self.limiter.get_usage("fast") == (1, 60)

    def test_reset_all(self):
        """reset() sem argumento limpa todos."""
        self.limiter.try_admit("fast")
        self.limiter.try_admit("slow")

        self.limiter.reset()

        assert self.limiter.get_usage("fast") == (0, 60)
        assert self.limiter.get_usage("slow") == (0, 2)

    def test_reset_unknown_provider_raises(self):
        with pytest.raises(UnknownProviderError):
            self.limiter.reset("nope")

    def test_reset_provider_removed_from_registry(self):
        """Estado de provider que saiu do registry ainda pode ser resetado."""
        self.limiter.try_admit("slow")
        self.registry.remove("slow")

        self.limiter.reset("slow")

        assert self.limiter.window_count("slow") == 0

    def test_forget_drops_state(self):
        self.limiter.try_admit("fast")

        self.limiter.forget("fast")

        assert "fast" not in self.limiter.tracked_providers()
        assert self.limiter.window_count("fast") == 0

    def test_concurrent_admissions_are_atomic(self):
        """8 threads disputando 2x o limite admitem exatamente o limite."""
        barrier = threading.Barrier(8)

        def worker(_):
            barrier.wait()
            return sum(self.limiter.try_admit("fast")[0] for _ in range(15))

        with ThreadPoolExecutor(max_workers=8) as pool:
            admitted = sum(pool.map(worker, range(8)))

        assert admitted == 60
        assert self.limiter.get_usage("fast") == (60, 60)

    def test_reloaded_limit_applies_and_state_survives(self):
        """Profile recarregado vale na hora; timestamps existentes continuam contando."""
        self.limiter.try_admit("slow")
        self.limiter.try_admit("slow")
        assert self.limiter.try_admit("slow")[0] is False

        self.registry.register(make_profile("slow", rpm=3))

        assert self.limiter.get_usage("slow") == (2, 3)
        assert self.limiter.try_admit("slow")[0] is True
        assert self.limiter.try_admit("slow")[0] is False

    def test_custom_window_scales_limit(self):
        """Janela de 30s admite metade do limite por minuto."""
        limiter = SlidingWindowRateLimiter(self.registry, window_seconds=30, clock=self.clock)
        results = [limiter.try_admit("fast")[0] for _ in range(40)]
        assert results.count(True) == 30

    @pytest.mark.asyncio
    async def test_acquire_immediate(self):
        """acquire não dorme se há vaga."""
        waited = await self.limiter.acquire("fast", max_wait_s=5)
        assert waited == 0
        assert self.sleep.calls == []

    @pytest.mark.asyncio
    async def test_acquire_waits_for_slot(self):
        """acquire dorme o retry_after e verifica de novo."""
        self.limiter.try_admit("slow")
        self.limiter.try_admit("slow")

        waited = await self.limiter.acquire("slow", max_wait_s=120)

        assert waited == pytest.approx(60.0)
        assert self.sleep.calls == [pytest.approx(60.0)]
        assert self.limiter.get_usage("slow") == (1, 2)

    @pytest.mark.asyncio
    async def test_acquire_raises_when_wait_exceeds_max(self):
        """Espera maior que max_wait_s vira RateLimitedError."""
        self.limiter.try_admit("slow")
        self.limiter.try_admit("slow")

        with pytest.raises(RateLimitedError) as exc_info:
            await self.limiter.acquire("slow", max_wait_s=10)

        assert exc_info.value.retry_after_ms == 60_000
        assert exc_info.value.kind == "rate_limited"
        assert self.sleep.calls == []

    @pytest.mark.asyncio
    async def test_acquire_interrupted_by_cancel_event(self):
        """cancel_event setado durante a espera encerra o acquire sem admitir."""
        limiter = SlidingWindowRateLimiter(self.registry, clock=self.clock)
        limiter.try_admit("slow")
        limiter.try_admit("slow")
        cancel = asyncio.Event()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            cancel.set()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(JobCancelledError):
            await asyncio.wait_for(limiter.acquire("slow", max_wait_s=120, cancel_event=cancel), timeout=5)
        await canceller

        assert limiter.get_usage("slow") == (2, 2)

    @pytest.mark.asyncio
    async def test_acquire_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(JobCancelledError):
            await self.limiter.acquire("fast", cancel_event=cancel)

        assert self.limiter.get_usage("fast") == (0, 60)

    def test_get_status(self):
        self.limiter.try_admit("fast")
        status = self.limiter.get_status()

        assert status["fast"]["current"] == 1
        assert status["fast"]["limit"] == 60
        assert "slow" in status
