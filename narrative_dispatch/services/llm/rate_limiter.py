"""
Rate Limiter com janela deslizante.
Controla quantas requisições cada provider admite dentro da janela (padrão 60s).

Diferente de um bucket fixo, o limite vale para qualquer intervalo de 60s:
um burst de 2x o limite admite exatamente o limite, e o restante só entra
conforme os timestamps mais antigos saem da janela.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Tuple

from .errors import JobCancelledError, RateLimitedError, UnknownProviderError
from .provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)


class _WindowState:
    """Timestamps de admissão de um provider, em ordem crescente."""

    __slots__ = ("timestamps", "lock")

    def __init__(self):
        self.timestamps: Deque[float] = deque()
        self.lock = threading.Lock()

    def prune(self, now: float, window: float) -> None:
        cutoff = now - window
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class SlidingWindowRateLimiter:
    """
    Gerencia uma janela deslizante por provider.

    O limite (max_requests_per_minute) é lido do registry a cada verificação,
    então um reload do profile vale imediatamente sem perder os timestamps.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._window = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, _WindowState] = {}
        self._states_lock = threading.Lock()

    @property
    def window_seconds(self) -> float:
        return self._window

    def _state(self, provider_id: str) -> _WindowState:
        state = self._states.get(provider_id)
        if state is None:
            with self._states_lock:
                state = self._states.setdefault(provider_id, _WindowState())
        return state

    def _limit_for(self, provider_id: str) -> int:
        # Janelas diferentes de 60s escalam o limite por minuto proporcionalmente
        profile = self._registry.get(provider_id)
        return max(1, int(profile.max_requests_per_minute * self._window / 60.0))

    def try_admit(self, provider_id: str) -> Tuple[bool, int]:
        """
        Tenta admitir uma requisição agora.

        Returns:
            (True, 0) se admitido; (False, ms até o timestamp mais antigo sair da janela)
        """
        limit = self._limit_for(provider_id)
        state = self._state(provider_id)

        with state.lock:
            now = self._clock()
            state.prune(now, self._window)

            if len(state.timestamps) < limit:
                state.timestamps.append(now)
                return True, 0

            oldest = state.timestamps[0]
            retry_after = (oldest + self._window) - now
            retry_after_ms = max(1, int(retry_after * 1000 + 0.999))

        logger.debug(
            f"RateLimiter: {provider_id} no limite ({limit}/{self._window:.0f}s), "
            f"retry em {retry_after_ms}ms"
        )
        return False, retry_after_ms

    async def acquire(
        self,
        provider_id: str,
        max_wait_s: float = 120.0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> float:
        """
        Aguarda admissão, dormindo o retry_after informado e verificando de novo.

        Args:
            provider_id: Provider alvo
            max_wait_s: Espera máxima acumulada em segundos
            cancel_event: Interrompe a espera assim que for setado

        Returns:
            Tempo total esperado em segundos

        Raises:
            RateLimitedError: se a próxima espera ultrapassar max_wait_s
            JobCancelledError: se cancel_event for setado antes da admissão
        """
        waited = 0.0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError(f"{provider_id}: cancelado aguardando admissão")

            admitted, retry_after_ms = self.try_admit(provider_id)
            if admitted:
                if waited > 0:
                    logger.info(f"RateLimiter: {provider_id} admitido após {waited:.1f}s de espera")
                return waited

            wait = retry_after_ms / 1000.0
            if waited + wait > max_wait_s:
                logger.warning(
                    f"⚠️ RateLimiter: {provider_id} excederia espera máxima "
                    f"({waited + wait:.1f}s > {max_wait_s:.1f}s)"
                )
                raise RateLimitedError(
                    f"{provider_id}: admissão negada, próxima vaga em {retry_after_ms}ms",
                    retry_after_ms=retry_after_ms,
                )

            await self._wait(wait, cancel_event)
            waited += wait

    async def _wait(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return

        sleeper = asyncio.create_task(self._sleep(seconds))
        canceller = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, canceller, return_exceptions=True)
        if not sleeper.cancelled():
            sleeper.result()

    def get_usage(self, provider_id: str) -> Tuple[int, int]:
        """Retorna (admissões na janela atual, limite) para o provider."""
        limit = self._limit_for(provider_id)
        state = self._state(provider_id)
        with state.lock:
            state.prune(self._clock(), self._window)
            return len(state.timestamps), limit

    def reset(self, provider_id: Optional[str] = None) -> None:
        """Limpa o estado de um provider, ou de todos."""
        if provider_id is None:
            with self._states_lock:
                self._states.clear()
            logger.info("RateLimiter: estado de todos os providers resetado")
            return

        state = self._states.get(provider_id)
        if state is None:
            if provider_id not in self._registry:
                raise UnknownProviderError(provider_id)
            return
        with state.lock:
            state.timestamps.clear()

    def forget(self, provider_id: str) -> None:
        """Descarta o estado de um provider que saiu do registry."""
        with self._states_lock:
            self._states.pop(provider_id, None)
        logger.info(f"RateLimiter: estado de {provider_id} descartado")

    def window_count(self, provider_id: str) -> int:
        """Admissões na janela atual, sem consultar o registry (0 se não rastreado)."""
        state = self._states.get(provider_id)
        if state is None:
            return 0
        with state.lock:
            state.prune(self._clock(), self._window)
            return len(state.timestamps)

    def tracked_providers(self) -> list:
        """Ids com estado de janela (incluindo os que saíram do registry)."""
        return list(self._states)

    def get_status(self) -> dict:
        status = {}
        for provider_id in self._registry.provider_ids:
            current, limit = self.get_usage(provider_id)
            status[provider_id] = {
                "current": current,
                "limit": limit,
                "utilization": f"{current / limit:.1%}",
            }
        return status
