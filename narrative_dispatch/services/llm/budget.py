"""
Orçamento em USD para chamadas LLM.
Alertas em 80% e 95% de uso e quando o teto é atingido.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

ALERT_THRESHOLDS = (0.8, 0.95)


@dataclass
class CostRecord:
    provider_id: str
    job_id: str
    prompt_tokens: int
    completion_tokens: int
    cost_usd: float
    timestamp: float


@dataclass
class BudgetAlert:
    type: str  # warning | critical | exceeded
    message: str
    current_usage: float
    limit: float
    percentage: float


class BudgetTracker:
    def __init__(self, usd_cap: float):
        self._cap = usd_cap
        self._used = 0.0
        self._records: List[CostRecord] = []
        self._last_alert_level = 0

    @property
    def cap(self) -> float:
        return self._cap

    @property
    def used(self) -> float:
        return self._used

    @property
    def remaining(self) -> float:
        return max(0.0, self._cap - self._used)

    @property
    def usage_percentage(self) -> float:
        if self._cap <= 0:
            return 100.0
        return self._used / self._cap * 100

    def can_afford(self, estimated_cost: float) -> bool:
        return self._used + estimated_cost <= self._cap

    def charge(
        self,
        provider_id: str,
        cost_usd: float,
        job_id: str = "",
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> Optional[BudgetAlert]:
        """Registra o custo e retorna um alerta se um novo limiar foi cruzado."""
        self._used += cost_usd
        self._records.append(CostRecord(
            provider_id=provider_id,
            job_id=job_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_usd=cost_usd,
            timestamp=time.time(),
        ))
        alert = self._check_alerts()
        if alert is not None:
            log = logger.error if alert.type == "exceeded" else logger.warning
            log(f"💰 [BUDGET_{alert.type.upper()}] {alert.message}")
        return alert

    def _check_alerts(self) -> Optional[BudgetAlert]:
        percentage = self.usage_percentage

        if percentage >= 100:
            return BudgetAlert(
                type="exceeded",
                message="Orçamento esgotado; novos jobs serão recusados.",
                current_usage=self._used,
                limit=self._cap,
                percentage=percentage,
            )

        for i in range(len(ALERT_THRESHOLDS) - 1, -1, -1):
            threshold = ALERT_THRESHOLDS[i]
            if percentage >= threshold * 100 and i >= self._last_alert_level:
                self._last_alert_level = i + 1
                return BudgetAlert(
                    type="critical" if i == len(ALERT_THRESHOLDS) - 1 else "warning",
                    message=f"Orçamento {threshold:.0%} usado. Restante: ${self.remaining:.4f}",
                    current_usage=self._used,
                    limit=self._cap,
                    percentage=percentage,
                )
        return None

    def spending_by_provider(self) -> Dict[str, float]:
        spending: Dict[str, float] = {}
        for record in self._records:
            spending[record.provider_id] = spending.get(record.provider_id, 0.0) + record.cost_usd
        return spending

    def reset(self) -> None:
        self._used = 0.0
        self._records = []
        self._last_alert_level = 0

    def set_cap(self, usd_cap: float) -> None:
        self._cap = usd_cap

    def get_status(self) -> dict:
        return {
            "cap_usd": self._cap,
            "used_usd": round(self._used, 6),
            "remaining_usd": round(self.remaining, 6),
            "usage_percentage": round(self.usage_percentage, 2),
            "by_provider": {k: round(v, 6) for k, v in self.spending_by_provider().items()},
        }
