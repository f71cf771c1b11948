import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)

_CONFIG_CACHE: Dict[str, Dict[str, Any]] = {}
_BASE_PATH = Path(__file__).parent


def _resolve(filename: Union[str, Path]) -> Path:
    path = Path(filename)
    return path if path.is_absolute() else _BASE_PATH / path


def load_config(filename: Union[str, Path], *, use_cache: bool = True) -> Dict[str, Any]:
    """
    Carrega um arquivo JSON de configuração.

    Caminhos relativos são resolvidos a partir de narrative_dispatch/configs.

    Args:
        filename: Nome do arquivo (ex.: 'providers.json') ou caminho absoluto.
        use_cache: Se True, cacheia o conteúdo em memória.
    """
    path = _resolve(filename)
    key = str(path)
    if use_cache and key in _CONFIG_CACHE:
        return _CONFIG_CACHE[key]

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if use_cache:
            _CONFIG_CACHE[key] = data
        return data
    except FileNotFoundError:
        logger.warning(f"[config_loader] Arquivo não encontrado: {path}")
    except json.JSONDecodeError as exc:
        logger.warning(f"[config_loader] JSON inválido em {path}: {exc}")

    return {}


def reset_cache() -> None:
    """Limpa o cache de arquivos carregados (usado no reload da tabela de providers)."""
    _CONFIG_CACHE.clear()
