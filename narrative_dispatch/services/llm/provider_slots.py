"""
Slots de concorrência por provider com fila de espera por prioridade.

Equivalente a um asyncio.Semaphore(max_concurrent), mas quem espera é
atendido por prioridade (HIGH antes de NORMAL antes de LOW) e, dentro da
mesma prioridade, por ordem de chegada. O limite pode mudar em runtime
(reload do profile).
"""

import asyncio
import heapq
import itertools
import logging
from contextlib import asynccontextmanager
from enum import IntEnum
from typing import List, Tuple

logger = logging.getLogger(__name__)


class LLMPriority(IntEnum):
    """Menor valor = atendido primeiro."""
    HIGH = 1
    NORMAL = 2
    LOW = 3

    @classmethod
    def from_label(cls, label: str) -> "LLMPriority":
        return cls[label.upper()]


class PrioritySlots:
    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit deve ser >= 1")
        self._limit = limit
        self._in_use = 0
        self._waiters: List[Tuple[int, int, asyncio.Future]] = []
        self._seq = itertools.count()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return sum(1 for _, _, fut in self._waiters if not fut.done())

    def set_limit(self, limit: int) -> None:
        """Ajusta o limite; slots já em uso não são revogados."""
        if limit < 1:
            raise ValueError("limit deve ser >= 1")
        if limit != self._limit:
            logger.info(f"PrioritySlots: limite {self._limit} → {limit}")
        self._limit = limit
        self._wake()

    async def acquire(self, priority: LLMPriority = LLMPriority.NORMAL) -> None:
        if self._in_use < self._limit and not self.waiting:
            self._in_use += 1
            return

        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (int(priority), next(self._seq), fut))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot já tinha sido concedido; devolve
                self.release()
            raise

    def release(self) -> None:
        self._in_use = max(0, self._in_use - 1)
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._in_use < self._limit:
            _, _, fut = heapq.heappop(self._waiters)
            if fut.done():
                continue
            self._in_use += 1
            fut.set_result(True)

    @asynccontextmanager
    async def slot(self, priority: LLMPriority = LLMPriority.NORMAL):
        await self.acquire(priority)
        try:
            yield
        finally:
            self.release()
