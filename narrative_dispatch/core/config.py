import os
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


class Settings:
    # Tabela de providers (rate limits, custos, retry policy)
    PROVIDERS_FILE: Path = Path(
        os.getenv("PROVIDERS_FILE", str(Path(__file__).parent.parent / "configs" / "providers.json"))
    )

    # Rate limiting
    RATE_LIMIT_WINDOW_SECONDS: float = _env_float("RATE_LIMIT_WINDOW_SECONDS", 60.0)
    MAX_ADMISSION_WAIT_SECONDS: float = _env_float("MAX_ADMISSION_WAIT_SECONDS", 120.0)

    # Chunking (em palavras, igual ao analisador de manuscrito completo)
    DEFAULT_WINDOW_WORDS: int = _env_int("DEFAULT_WINDOW_WORDS", 2000)
    DEFAULT_OVERLAP_WORDS: int = _env_int("DEFAULT_OVERLAP_WORDS", 200)

    # Health
    HEALTH_UTILIZATION_THRESHOLD: float = _env_float("HEALTH_UTILIZATION_THRESHOLD", 0.9)
    HEALTH_ERROR_WINDOW_SECONDS: float = _env_float("HEALTH_ERROR_WINDOW_SECONDS", 300.0)

    # Jobs
    JOB_RETENTION_SECONDS: float = _env_float("JOB_RETENTION_SECONDS", 3600.0)
    JOB_TIMEOUT_SECONDS: float = _env_float("JOB_TIMEOUT_SECONDS", 0.0)  # 0 = calculado por job

    # Budget (USD)
    BUDGET_USD: float = _env_float("BUDGET_USD", 10.0)

    # Security
    API_ACCESS_TOKEN: str = os.getenv("API_ACCESS_TOKEN", "my-secret-token-dev")

    # Logs
    LOGS_DIR: Path = Path(os.getenv("LOGS_DIR", "logs"))
    LOG_TO_FILE: bool = os.getenv("LOG_TO_FILE", "true").lower() in ("1", "true", "yes")
    HEALTH_LOG_INTERVAL_SECONDS: float = _env_float("HEALTH_LOG_INTERVAL_SECONDS", 60.0)


settings = Settings()
