"""
Catálogo de providers LLM.

Cada ProviderProfile é imutável depois de registrado. O registry é construído
explicitamente (sem singleton global) e injetado no RateLimiter, Dispatcher,
HealthMonitor e CostEstimator. A tabela pode ser recarregada em runtime:
profiles são trocados atomicamente e o estado de rate limit, indexado pelo id,
sobrevive enquanto o id não mudar.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from narrative_dispatch.configs.config_loader import load_config, reset_cache
from .errors import UnknownProviderError

logger = logging.getLogger(__name__)


class TokenCost(BaseModel):
    """Custo em USD por token."""
    model_config = ConfigDict(frozen=True)

    prompt: float = Field(0.0, ge=0)
    completion: float = Field(0.0, ge=0)


class RetryPolicy(BaseModel):
    """Política de retry com backoff exponencial."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(3, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    base_delay_ms: int = Field(1000, ge=0)

    def delay_seconds(self, attempt: int) -> float:
        """Delay antes do retry após a tentativa `attempt` (1-based)."""
        return (self.base_delay_ms / 1000.0) * (self.backoff_multiplier ** (attempt - 1))


class ProviderProfile(BaseModel):
    """Configuração de um provider LLM."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    max_requests_per_minute: int = Field(..., gt=0)
    max_concurrent: int = Field(1, gt=0)
    cost_per_token: TokenCost = Field(default_factory=TokenCost)
    max_tokens_per_request: int = Field(4096, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    # Transporte (endpoint OpenAI-compatible)
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key_env: str = ""
    timeout_seconds: float = Field(90.0, gt=0)
    local: bool = False  # modelos locais são gratuitos e ficam fora da comparação de custo
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data):
        if isinstance(data, dict) and not data.get("name"):
            data = {**data, "name": data.get("id", "")}
        return data


class ProviderRegistry:
    """
    Registry de ProviderProfile em ordem de registro.

    A ordem de registro é usada como critério de desempate na seleção por custo.
    """

    def __init__(self, profiles: Optional[Iterable[ProviderProfile]] = None):
        self._profiles: Dict[str, ProviderProfile] = {}
        self._lock = threading.Lock()
        self._version = 0
        self._source: Optional[Path] = None

        for profile in profiles or []:
            self.register(profile)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ProviderRegistry":
        """Cria registry a partir de um JSON no formato {"providers": [...]}."""
        registry = cls()
        registry._source = Path(path)
        registry.load(cls._read_profiles(path))
        return registry

    @staticmethod
    def _read_profiles(path: Union[str, Path]) -> List[ProviderProfile]:
        data = load_config(path, use_cache=False)
        raw_profiles = data.get("providers", [])
        if not raw_profiles:
            logger.warning(f"ProviderRegistry: nenhum provider em {path}")
        return [ProviderProfile.model_validate(raw) for raw in raw_profiles]

    def register(self, profile: ProviderProfile) -> None:
        """Registra (ou substitui) um profile. Substituir preserva a posição original."""
        with self._lock:
            replaced = profile.id in self._profiles
            profiles = dict(self._profiles)
            profiles[profile.id] = profile
            self._profiles = profiles
            self._version += 1

        action = "atualizado" if replaced else "adicionado"
        logger.info(
            f"ProviderRegistry: {profile.id} {action} "
            f"(rpm={profile.max_requests_per_minute}, concurrent={profile.max_concurrent})"
        )

    def remove(self, provider_id: str) -> None:
        with self._lock:
            profiles = dict(self._profiles)
            profiles.pop(provider_id, None)
            self._profiles = profiles
            self._version += 1

    def load(self, profiles: Iterable[ProviderProfile]) -> None:
        """Substitui a tabela inteira de uma vez (ordem = ordem da lista)."""
        new_profiles = {p.id: p for p in profiles}
        with self._lock:
            removed = set(self._profiles) - set(new_profiles)
            self._profiles = new_profiles
            self._version += 1

        logger.info(f"ProviderRegistry: {len(new_profiles)} providers carregados")
        if removed:
            logger.warning(f"ProviderRegistry: providers removidos no reload: {sorted(removed)}")

    def reload(self, path: Optional[Union[str, Path]] = None) -> int:
        """
        Recarrega a tabela do arquivo de origem (ou de `path`).

        Jobs em andamento não são reiniciados; o estado de rate limit
        indexado por id continua valendo para ids que não mudaram.

        Returns:
            Número de providers carregados
        """
        source = Path(path) if path else self._source
        if source is None:
            raise ValueError("ProviderRegistry sem arquivo de origem para reload")
        reset_cache()
        profiles = self._read_profiles(source)
        if not profiles:
            raise ValueError(f"Tabela de providers vazia ou ilegível em {source}; mantendo a atual")
        self._source = source
        self.load(profiles)
        return len(profiles)

    def get(self, provider_id: str) -> ProviderProfile:
        profile = self._profiles.get(provider_id)
        if profile is None:
            raise UnknownProviderError(provider_id)
        return profile

    def find(self, provider_id: str) -> Optional[ProviderProfile]:
        return self._profiles.get(provider_id)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    @property
    def version(self) -> int:
        return self._version

    @property
    def provider_ids(self) -> List[str]:
        """Ids em ordem de registro."""
        return list(self._profiles)

    def profiles(self, include_disabled: bool = False) -> List[ProviderProfile]:
        return [p for p in self._profiles.values() if include_disabled or p.enabled]

    def get_status(self) -> dict:
        return {
            pid: {
                "name": p.name,
                "model": p.model,
                "enabled": p.enabled,
                "local": p.local,
                "max_requests_per_minute": p.max_requests_per_minute,
                "max_concurrent": p.max_concurrent,
                "max_tokens_per_request": p.max_tokens_per_request,
            }
            for pid, p in self._profiles.items()
        }
