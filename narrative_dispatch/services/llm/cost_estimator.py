"""
Estimativa de custo e seleção de provider.

CostEstimator responde perguntas sobre a tabela de providers (custo,
tamanho ótimo de lote, delay recomendado). ProviderSelector combina custo,
capacidade por requisição e utilização atual para escolher o provider de um job.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from .health_monitor import HealthMonitor
from .provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)

BATCH_SAFETY_MARGIN = 0.8
DELAY_SAFETY_MARGIN = 1.1


class CostEstimator:
    def __init__(self, registry: ProviderRegistry):
        self._registry = registry

    def estimate_cost(self, provider_id: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Custo em USD: prompt * custo_prompt + completion * custo_completion."""
        cost = self._registry.get(provider_id).cost_per_token
        return prompt_tokens * cost.prompt + completion_tokens * cost.completion

    def select_cheapest(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        excluding: Iterable[str] = (),
    ) -> Optional[str]:
        """
        Provider habilitado, não local e não excluído de menor custo.

        Empates ficam com o primeiro registrado. None se não houver candidato.
        """
        excluded = set(excluding)
        best_id: Optional[str] = None
        best_cost = math.inf

        for profile in self._registry.profiles():
            if profile.local or profile.id in excluded:
                continue
            cost = self.estimate_cost(profile.id, prompt_tokens, completion_tokens)
            if cost < best_cost:
                best_id, best_cost = profile.id, cost

        return best_id

    def optimal_batch_size(self, provider_id: str, window_ms: int = 60_000) -> int:
        """floor(min(rpm * janela/60s * 0.8, max_concurrent)); 1 para provider desconhecido."""
        profile = self._registry.find(provider_id)
        if profile is None:
            return 1
        rate_based = profile.max_requests_per_minute * (window_ms / 60_000) * BATCH_SAFETY_MARGIN
        return int(math.floor(min(rate_based, profile.max_concurrent)))

    def recommended_delay_ms(self, provider_id: str) -> int:
        """Intervalo entre requisições para ficar 10% abaixo do limite; 1000ms se desconhecido."""
        profile = self._registry.find(provider_id)
        if profile is None:
            return 1000
        return int(round(60_000 / profile.max_requests_per_minute * DELAY_SAFETY_MARGIN))

    def supports_batching(self, provider_id: str) -> bool:
        profile = self._registry.find(provider_id)
        if profile is None:
            return False
        return profile.max_concurrent > 1 and profile.max_requests_per_minute > 30


@dataclass
class ProviderSelection:
    """Resultado da seleção de provider."""
    provider: str
    reason: str
    estimated_cost: float
    utilization: float


class ProviderSelector:
    """
    Escolhe o provider de um job.

    Critérios (em ordem):
    1. Capacidade: max_tokens_per_request comporta a maior requisição do job
    2. Utilização abaixo do limiar do HealthMonitor
    3. Menor custo (empate: ordem de registro)
    Se todos os capazes estiverem acima do limiar, usa o menos utilizado.
    """

    def __init__(self, registry: ProviderRegistry, estimator: CostEstimator, health_monitor: HealthMonitor):
        self._registry = registry
        self._estimator = estimator
        self._health = health_monitor

    def select(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        excluding: Iterable[str] = (),
    ) -> Optional[ProviderSelection]:
        excluded = set(excluding)
        required = prompt_tokens + completion_tokens

        capable = [
            p for p in self._registry.profiles()
            if not p.local and p.id not in excluded and p.max_tokens_per_request >= required
        ]
        if not capable:
            logger.warning(f"ProviderSelector: nenhum provider comporta {required:,} tokens por requisição")
            return None

        utilization = {p.id: self._health.utilization(p.id) for p in capable}
        overloaded = {pid for pid, u in utilization.items() if u > self._health.utilization_threshold}

        cheapest = self._estimator.select_cheapest(
            prompt_tokens,
            completion_tokens,
            excluding=excluded | overloaded | (set(self._registry.provider_ids) - {p.id for p in capable}),
        )
        if cheapest is not None:
            selection = ProviderSelection(
                provider=cheapest,
                reason="lowest_cost",
                estimated_cost=self._estimator.estimate_cost(cheapest, prompt_tokens, completion_tokens),
                utilization=utilization[cheapest],
            )
        else:
            least_used = min(capable, key=lambda p: utilization[p.id])
            logger.warning(
                f"⚠️ ProviderSelector: todos os providers acima de "
                f"{self._health.utilization_threshold:.0%}, usando {least_used.id}"
            )
            selection = ProviderSelection(
                provider=least_used.id,
                reason="least_utilized",
                estimated_cost=self._estimator.estimate_cost(least_used.id, prompt_tokens, completion_tokens),
                utilization=utilization[least_used.id],
            )

        logger.debug(
            f"ProviderSelector: Selecionado {selection.provider} "
            f"(custo=${selection.estimated_cost:.4f}, util={selection.utilization:.0%}, "
            f"reason={selection.reason})"
        )
        return selection
