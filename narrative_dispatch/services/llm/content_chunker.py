"""
Chunking de manuscritos para processamento por LLM.
Divide sequências (palavras, cenas) em janelas sobrepostas de tamanho fixo.
"""

import logging
from dataclasses import dataclass
from typing import Any, Generic, List, Sequence, TypeVar

from .provider_registry import ProviderProfile

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Caracteres por token por tipo de conteúdo
CHARS_PER_TOKEN = {
    "prose": 4.2,
    "dialogue": 3.8,
    "technical": 4.8,
}
TOKENS_PER_WORD = 1.3
SYSTEM_PROMPT_OVERHEAD = 300


@dataclass(frozen=True)
class Window(Generic[T]):
    """Janela [start, end) de uma sequência; overlap_size é o trecho compartilhado com a próxima."""
    index: int
    start: int
    end: int
    overlap_size: int
    items: Sequence[T]

    def __len__(self) -> int:
        return self.end - self.start

    @property
    def text(self) -> str:
        return " ".join(str(item) for item in self.items)


def split(sequence: Sequence[T], window_size: int, overlap: int) -> List[Window[T]]:
    """
    Divide `sequence` em janelas de `window_size` itens avançando `window_size - overlap`.

    A última janela é cortada no fim da sequência e nenhuma janela é emitida
    depois de uma que já alcançou o fim. Sequências com até `window_size` itens
    (inclusive vazias) geram exatamente uma janela.

    Raises:
        ValueError: se não valer 0 <= overlap < window_size
    """
    if window_size <= 0 or overlap < 0 or overlap >= window_size:
        raise ValueError(
            f"Parâmetros inválidos: window_size={window_size}, overlap={overlap} "
            f"(exige 0 <= overlap < window_size)"
        )

    length = len(sequence)
    if length <= window_size:
        return [Window(index=0, start=0, end=length, overlap_size=0, items=sequence[0:length])]

    step = window_size - overlap
    windows: List[Window[T]] = []
    start = 0
    while True:
        end = min(start + window_size, length)
        is_last = end >= length
        windows.append(Window(
            index=len(windows),
            start=start,
            end=end,
            overlap_size=0 if is_last else overlap,
            items=sequence[start:end],
        ))
        if is_last:
            break
        start += step

    return windows


def chunk_text(text: str, window_words: int = 2000, overlap_words: int = 200) -> List[Window[str]]:
    """Janelas de palavras (separadas por whitespace) sobre o texto."""
    words = text.split()
    windows = split(words, window_words, overlap_words)
    logger.debug(
        f"chunk_text: {len(words):,} palavras → {len(windows)} janelas "
        f"({window_words}/{overlap_words})"
    )
    return windows


def chunk_scenes(scenes: Sequence[Any], window_size: int = 5, overlap: int = 1) -> List[Window[Any]]:
    """Janelas de cenas para checagens de continuidade entre cenas vizinhas."""
    return split(scenes, window_size, overlap)


def estimate_tokens(text: str, content_type: str = "prose") -> int:
    """
    Estima tokens de prompt pelo número de caracteres.

    content_type: 'prose', 'dialogue' ou 'technical'
    """
    ratio = CHARS_PER_TOKEN.get(content_type, CHARS_PER_TOKEN["prose"])
    return int(len(text) / ratio + 0.999) if text else 0


def fit_window_size(
    profile: ProviderProfile,
    completion_tokens: int,
    requested_words: int = 2000,
    overlap_words: int = 200,
) -> int:
    """
    Limita o tamanho da janela (em palavras) ao que cabe em max_tokens_per_request.

    Reserva o orçamento de completion e o overhead do system prompt; nunca
    retorna um valor <= overlap_words, para que a divisão continue válida.
    """
    available = profile.max_tokens_per_request - completion_tokens - SYSTEM_PROMPT_OVERHEAD
    max_words = int(available / TOKENS_PER_WORD)
    fitted = min(requested_words, max_words)

    if fitted <= overlap_words:
        fitted = overlap_words + 1
        logger.warning(
            f"⚠️ {profile.id}: max_tokens_per_request={profile.max_tokens_per_request} "
            f"comporta poucas palavras, usando janela mínima de {fitted}"
        )
    elif fitted < requested_words:
        logger.info(f"📏 {profile.id}: janela reduzida de {requested_words} para {fitted} palavras")

    return fitted
