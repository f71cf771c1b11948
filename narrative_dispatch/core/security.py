"""
Autenticação simples por header para os endpoints de análise.
"""
from typing import Optional

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader

from narrative_dispatch.core.config import settings

api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


async def require_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Valida o header x-api-key contra API_ACCESS_TOKEN."""
    if api_key and api_key == settings.API_ACCESS_TOKEN:
        return api_key
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Credenciais inválidas ou ausentes (x-api-key)"
    )
