"""
Parse e validação das respostas do LLM contra o schema do tipo de job.
"""

import json
import logging
from typing import Optional, Type, TypeVar

import json_repair
from pydantic import ValidationError

from narrative_dispatch.schemas.analysis import AnalysisResult
from .errors import MalformedResponseError

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=AnalysisResult)


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def parse_json_object(content: Optional[str]) -> dict:
    """
    Converte o conteúdo da resposta em dict.

    Tenta json.loads primeiro; se falhar, json_repair. Qualquer coisa que não
    seja um objeto JSON é MalformedResponseError.
    """
    if not content or not content.strip():
        raise MalformedResponseError("Resposta vazia do provider", raw=content)

    text = _strip_code_fence(content)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️ JSON padrão falhou ({e}). Tentando reparar... Primeiros 200 chars: {text[:200]}")
        data = json_repair.loads(text)

    if not isinstance(data, dict):
        raise MalformedResponseError(
            f"Resposta não é um objeto JSON (tipo: {type(data).__name__})", raw=content
        )
    return data


def validate_response(content: Optional[str], schema: Type[R]) -> R:
    """Parse + validação pydantic. Falha fechado com MalformedResponseError."""
    data = parse_json_object(content)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(
            f"Resposta não corresponde ao schema {schema.__name__}: {e.error_count()} erro(s)",
            raw=content,
        ) from e
