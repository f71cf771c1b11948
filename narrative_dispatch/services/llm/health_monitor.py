"""
Monitor de saúde dos providers LLM.
Combina a utilização do rate limiter com métricas de tentativas (erros e latência).
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from .provider_registry import ProviderRegistry
from .rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


class FailureType(Enum):
    """Tipos de falha para registro."""
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    ERROR = "error"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    MALFORMED = "malformed"


class SystemStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class ProviderMetrics:
    """Métricas de tentativas de um provider."""
    requests_total: int = 0
    requests_success: int = 0
    requests_failed: int = 0
    rate_limits_hit: int = 0
    timeouts: int = 0
    errors: int = 0
    failure_times: Deque[float] = field(default_factory=deque)
    recent_latencies: deque = field(default_factory=lambda: deque(maxlen=50))

    @property
    def success_rate(self) -> float:
        if self.requests_total == 0:
            return 1.0
        return self.requests_success / self.requests_total

    @property
    def avg_latency_ms(self) -> float:
        if not self.recent_latencies:
            return 0.0
        return sum(self.recent_latencies) / len(self.recent_latencies)


@dataclass
class ProviderHealth:
    provider_id: str
    has_profile: bool
    current: int
    limit: int
    utilization: float
    recent_errors: int
    avg_latency_ms: float
    success_rate: float

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "has_profile": self.has_profile,
            "current": self.current,
            "limit": self.limit,
            "utilization": round(self.utilization, 4),
            "recent_errors": self.recent_errors,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "success_rate": round(self.success_rate, 4),
        }


@dataclass
class HealthSnapshot:
    status: SystemStatus
    providers: Dict[str, ProviderHealth]
    overloaded: List[str]
    missing_profiles: List[str]
    taken_at: float

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "overloaded": self.overloaded,
            "missing_profiles": self.missing_profiles,
            "taken_at": self.taken_at,
            "providers": {pid: h.to_dict() for pid, h in self.providers.items()},
        }


class HealthMonitor:
    """
    Deriva o status do sistema a partir da utilização de cada provider.

    - critical: algum provider sem profile ainda com admissões na janela, ou
      mais providers acima do limiar de utilização do que abaixo/igual a ele
    - degraded: pelo menos um provider acima do limiar
    - healthy: caso contrário

    Snapshots são recalculados sob demanda e nunca persistidos. Leituras não
    usam lock; o resultado é eventualmente consistente.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        utilization_threshold: float = 0.9,
        error_window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._rate_limiter = rate_limiter
        self.utilization_threshold = utilization_threshold
        self.error_window_seconds = error_window_seconds
        self._clock = clock
        self._metrics: Dict[str, ProviderMetrics] = {}

    def _get_metrics(self, provider_id: str) -> ProviderMetrics:
        metrics = self._metrics.get(provider_id)
        if metrics is None:
            metrics = self._metrics.setdefault(provider_id, ProviderMetrics())
        return metrics

    def _prune_failures(self, metrics: ProviderMetrics, now: float) -> None:
        cutoff = now - self.error_window_seconds
        while metrics.failure_times and metrics.failure_times[0] <= cutoff:
            metrics.failure_times.popleft()

    def record_outcome(
        self,
        provider_id: str,
        success: bool,
        latency_ms: float,
        failure_type: Optional[FailureType] = None,
    ) -> None:
        """
        Registra o resultado de uma tentativa.

        Args:
            provider_id: Provider da tentativa
            success: Se a tentativa retornou resposta válida
            latency_ms: Tempo da tentativa em milissegundos
            failure_type: Classificação da falha (ignorado em sucesso)
        """
        metrics = self._get_metrics(provider_id)
        metrics.requests_total += 1
        if latency_ms > 0:
            metrics.recent_latencies.append(latency_ms)

        if success:
            metrics.requests_success += 1
            logger.debug(f"HealthMonitor: {provider_id} SUCCESS - {latency_ms:.0f}ms")
            return

        now = self._clock()
        metrics.requests_failed += 1
        metrics.failure_times.append(now)
        self._prune_failures(metrics, now)

        failure_type = failure_type or FailureType.ERROR
        if failure_type == FailureType.TIMEOUT:
            metrics.timeouts += 1
        elif failure_type == FailureType.RATE_LIMIT:
            metrics.rate_limits_hit += 1
        else:
            metrics.errors += 1

        logger.debug(f"HealthMonitor: {provider_id} FAILURE ({failure_type.value}) - {latency_ms:.0f}ms")

    def utilization(self, provider_id: str) -> float:
        current, limit = self._rate_limiter.get_usage(provider_id)
        return current / limit if limit else 0.0

    def is_overloaded(self, provider_id: str) -> bool:
        return self.utilization(provider_id) > self.utilization_threshold

    def _tracked_ids(self) -> List[str]:
        """
        Providers configurados mais os removidos que ainda têm admissões na janela.

        Removidos com a janela já vazia têm estado e métricas descartados.
        """
        ids = list(self._registry.provider_ids)
        for pid in self._rate_limiter.tracked_providers():
            if pid in ids:
                continue
            if self._rate_limiter.window_count(pid) > 0:
                ids.append(pid)
            else:
                self._rate_limiter.forget(pid)
                self._metrics.pop(pid, None)
        for pid in list(self._metrics):
            if pid not in ids and pid not in self._registry:
                self._metrics.pop(pid, None)
        return ids

    def snapshot(self) -> HealthSnapshot:
        now = self._clock()
        providers: Dict[str, ProviderHealth] = {}
        overloaded: List[str] = []
        missing: List[str] = []
        at_or_below = 0

        for pid in self._tracked_ids():
            metrics = self._get_metrics(pid)
            self._prune_failures(metrics, now)

            if pid not in self._registry:
                missing.append(pid)
                providers[pid] = ProviderHealth(
                    provider_id=pid,
                    has_profile=False,
                    current=self._rate_limiter.window_count(pid),
                    limit=0,
                    utilization=0.0,
                    recent_errors=len(metrics.failure_times),
                    avg_latency_ms=metrics.avg_latency_ms,
                    success_rate=metrics.success_rate,
                )
                continue

            current, limit = self._rate_limiter.get_usage(pid)
            utilization = current / limit if limit else 0.0
            if utilization > self.utilization_threshold:
                overloaded.append(pid)
            else:
                at_or_below += 1

            providers[pid] = ProviderHealth(
                provider_id=pid,
                has_profile=True,
                current=current,
                limit=limit,
                utilization=utilization,
                recent_errors=len(metrics.failure_times),
                avg_latency_ms=metrics.avg_latency_ms,
                success_rate=metrics.success_rate,
            )

        if missing or len(overloaded) > at_or_below:
            status = SystemStatus.CRITICAL
        elif overloaded:
            status = SystemStatus.DEGRADED
        else:
            status = SystemStatus.HEALTHY

        return HealthSnapshot(
            status=status,
            providers=providers,
            overloaded=overloaded,
            missing_profiles=missing,
            taken_at=time.time(),
        )

    def get_metrics(self, provider_id: str) -> dict:
        metrics = self._get_metrics(provider_id)
        return {
            "provider": provider_id,
            "requests_total": metrics.requests_total,
            "success_rate": f"{metrics.success_rate:.1%}",
            "avg_latency_ms": f"{metrics.avg_latency_ms:.0f}",
            "rate_limits": metrics.rate_limits_hit,
            "timeouts": metrics.timeouts,
            "errors": metrics.errors,
        }

    def reset(self, provider_id: Optional[str] = None) -> None:
        if provider_id:
            self._metrics.pop(provider_id, None)
            logger.info(f"HealthMonitor: Reset {provider_id}")
        else:
            self._metrics.clear()
            logger.info("HealthMonitor: Reset all metrics")


# Background log task
_monitor_task: Optional[asyncio.Task] = None


async def periodic_health_log(monitor: HealthMonitor, interval_seconds: float = 60.0):
    """Log periódico do snapshot de saúde."""
    while True:
        await asyncio.sleep(interval_seconds)
        snapshot = monitor.snapshot()
        for pid, health in snapshot.providers.items():
            logger.info(
                f"📊 [HEALTH] {pid}: "
                f"util={health.utilization:.0%} ({health.current}/{health.limit}), "
                f"errors={health.recent_errors}, "
                f"latency={health.avg_latency_ms:.0f}ms"
            )
        if snapshot.status != SystemStatus.HEALTHY:
            logger.warning(
                f"⚠️ [HEALTH] status={snapshot.status.value} "
                f"overloaded={snapshot.overloaded} missing={snapshot.missing_profiles}"
            )


def start_health_log(monitor: HealthMonitor, interval_seconds: float = 60.0) -> None:
    """Inicia o log de saúde em background."""
    global _monitor_task
    if _monitor_task and not _monitor_task.done():
        return
    _monitor_task = asyncio.create_task(periodic_health_log(monitor, interval_seconds))
    logger.info("🏥 HealthMonitor: Background logging iniciado")


def stop_health_log() -> None:
    """Para o log de saúde."""
    global _monitor_task
    if _monitor_task:
        _monitor_task.cancel()
        _monitor_task = None
        logger.info("🏥 HealthMonitor: Background logging parado")
